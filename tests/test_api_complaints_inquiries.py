import json

from config import Config
from conftest import message_rows


def _profiles(store):
    return {p['email']: p['id'] for p in store.table('profiles').execute()}


def test_create_complaint_queues_three_messages(client, staff_headers, school, store):
    ids = _profiles(store)
    response = client.post('/api/complaints', json={
        'student_id': 101, 'title': 'Bus late', 'complaint_text': 'Late twice this week',
        'against_user_id': ids['teacher@school'], 'assigned_to_user_id': ids['admin'],
    }, headers=staff_headers)

    assert response.status_code == 201
    assert response.get_json()['complaint']['status'] == 'New'

    messages = message_rows(store)
    assert [m['number'] for m in messages] == ['923001111111', '923001111111', Config.ADMIN_NOTIFY_NUMBER]
    assert '*Against:* teacher@school' in messages[2]['text']
    assert all(m['student_id'] == 101 for m in messages)


def test_complaint_requires_all_fields(client, staff_headers, school):
    response = client.post('/api/complaints', json={'student_id': 101, 'title': 'x'}, headers=staff_headers)
    assert response.status_code == 400

    response = client.post('/api/complaints', json={
        'student_id': 999, 'title': 'x', 'complaint_text': 'y', 'against_user_id': 1, 'assigned_to_user_id': 1,
    }, headers=staff_headers)
    assert response.status_code == 404


def test_update_complaint_notifications(client, staff_headers, school, store):
    ids = _profiles(store)
    complaint = client.post('/api/complaints', json={
        'student_id': 102, 'title': 'Homework', 'complaint_text': 'Too much',
        'against_user_id': ids['teacher@school'], 'assigned_to_user_id': ids['teacher@school'],
    }, headers=staff_headers).get_json()['complaint']
    url = f"/api/complaints/{complaint['id']}"

    # re-assigned: admin + parent
    response = client.put(url, json={'assigned_to_user_id': ids['admin'], 'status': 'In Progress'},
                          headers=staff_headers)
    assert response.get_json()['messages_queued'] == 2

    # unchanged fields: nothing queued
    assert client.put(url, json={'status': 'In Progress'}, headers=staff_headers).get_json()['messages_queued'] == 0

    # resolved: parent + admin
    resolved = client.put(url, json={'status': 'Resolved', 'resolution_notes': 'Spoke to teacher'},
                          headers=staff_headers)
    assert resolved.get_json()['messages_queued'] == 2
    assert 'Spoke to teacher' in message_rows(store)[-2]['text']

    assert client.put(url, json={'status': 'Done'}, headers=staff_headers).status_code == 400

    listed = client.get('/api/complaints?status=Resolved', headers=staff_headers).get_json()
    assert len(listed) == 1
    assert listed[0]['assigned_to'] == 'admin'
    assert listed[0]['student']['name'] == 'Bilal Ahmed'


def _add_family(client, headers, **extra):
    body = dict({
        'fathername': 'Imran Ali', 'mobilenumber': '923005555555', 'address': 'Street 4',
        'students': [{'name': 'Hamza', 'class': 'Prep'}, {'name': 'Ayesha', 'class': 'Class 2'}],
    }, **extra)
    return client.post('/api/inquiries', json=body, headers=headers)


def test_family_inquiry_sends_one_welcome(client, staff_headers, store):
    response = _add_family(client, staff_headers, quoted_fee={'monthly': 4000})

    assert response.status_code == 201
    rows = response.get_json()['inquiries']
    assert [r['name'] for r in rows] == ['Hamza', 'Ayesha']
    assert all(r['status'] == 'Inquiry' for r in rows)
    assert json.loads(rows[0]['quoted_fee'])['monthly'] == 4000
    assert json.loads(rows[0]['quoted_fee'])['admission'] == 8000

    messages = message_rows(store)
    assert len(messages) == 1
    assert 'Hamza & Ayesha' in messages[0]['text']


def test_inquiry_needs_named_students(client, staff_headers):
    assert _add_family(client, staff_headers, students=[]).status_code == 400
    assert _add_family(client, staff_headers, students=[{'class': 'Prep'}]).status_code == 400


def test_inquiry_status_pipeline(client, staff_headers, store):
    inquiry = _add_family(client, staff_headers).get_json()['inquiries'][0]
    url = f"/api/inquiries/{inquiry['id']}/status"

    assert client.put(url, json={'status': 'Test Scheduled'}, headers=staff_headers).status_code == 400
    assert client.put(url, json={'status': 'Waiting'}, headers=staff_headers).status_code == 400

    scheduled = client.put(url, json={'status': 'Test Scheduled', 'test_date': '2025-03-03T10:30',
                                      'notify': True}, headers=staff_headers).get_json()
    assert scheduled['template_type'] == 'TEST_SCHEDULED'
    assert 'Monday, Mar 3rd at 10:30 AM' in scheduled['message']
    assert message_rows(store)[-1]['text'] == scheduled['message']

    cleared = client.put(url, json={'status': 'Test Clear'}, headers=staff_headers).get_json()
    assert cleared['template_type'] == 'TEST_CLEAR'
    # notify was not set, so only the welcome and the schedule message exist
    assert len(message_rows(store)) == 2

    back = client.put(url, json={'status': 'Inquiry'}, headers=staff_headers).get_json()
    assert back['template_type'] is None and back['message'] == ''


def test_follow_up_counts(client, staff_headers, store):
    inquiry = _add_family(client, staff_headers).get_json()['inquiries'][0]
    url = f"/api/inquiries/{inquiry['id']}/follow-up"

    assert client.post(url, headers=staff_headers).get_json()['follow_up_count'] == 1
    assert client.post(url, headers=staff_headers).get_json()['follow_up_count'] == 2
    assert 'Admission Test' in message_rows(store)[-1]['text']
    assert client.post('/api/inquiries/999/follow-up', headers=staff_headers).status_code == 404


def test_inquiry_listing_search_and_grouping(client, staff_headers):
    _add_family(client, staff_headers)
    _add_family(client, staff_headers, fathername='Kashif', mobilenumber='923006666666',
                students=[{'name': 'Zoya'}])

    everyone = client.get('/api/inquiries', headers=staff_headers).get_json()
    assert [i['name'] for i in everyone] == ['Zoya', 'Ayesha', 'Hamza']
    assert everyone[0]['fee']['total'] == 23000

    found = client.get('/api/inquiries?search=kashif', headers=staff_headers).get_json()
    assert [i['name'] for i in found] == ['Zoya']

    families = client.get('/api/inquiries?grouped=true', headers=staff_headers).get_json()
    assert [len(f['children']) for f in families] == [1, 2]

    assert client.get('/api/inquiries?status=Admission', headers=staff_headers).get_json() == []


def test_messages_carry_plain_characters(client, staff_headers, store):
    _add_family(client, staff_headers, fathername='Malik & Sons', students=[{'name': "Zoya O'Neil"}])

    text = message_rows(store)[0]['text']
    assert '*Mr./Mrs. Malik & Sons,*' in text
    assert "inquiry for Zoya O'Neil" in text
    assert '&amp;' not in text and '&#x27;' not in text
