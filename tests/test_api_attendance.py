import datetime

import server
from conftest import fail_writes, message_rows


def _mark(client, headers, class_id, day, statuses, **extra):
    records = [{'studentid': sid, 'status': status} for sid, status in statuses.items()]
    return client.post(f'/api/attendance/{class_id}', json=dict({'date': day, 'records': records}, **extra),
                       headers=headers)


def test_unmarked_student_rejects_whole_day(client, staff_headers, school, store):
    class_id = school['class']['id']
    response = _mark(client, staff_headers, class_id, '2025-03-03',
                     {101: 'Present', 102: 'Unmarked', 103: 'Present'})

    assert response.status_code == 400
    assert response.get_json()['unmarked'] == ['Bilal Ahmed']
    assert store.table('attendance').count() == 0

    missing = _mark(client, staff_headers, class_id, '2025-03-03', {101: 'Present'})
    assert missing.status_code == 400


def test_student_from_another_class_rejected(client, staff_headers, school):
    response = _mark(client, staff_headers, school['class']['id'], '2025-03-03',
                     {101: 'Present', 102: 'Present', 103: 'Present', 555: 'Present'})
    assert response.status_code == 400


def test_save_replaces_day_and_queues_absentees(client, staff_headers, school, store):
    class_id = school['class']['id']
    first = _mark(client, staff_headers, class_id, '2025-03-03', {101: 'Absent', 102: 'Absent', 103: 'Absent'})
    assert first.get_json() == {"status": "success", "saved": 3, "absent": 3, "messages_queued": 2}

    second = _mark(client, staff_headers, class_id, '2025-03-03', {101: 'Present', 102: 'Absent', 103: 'Present'},
                   notify_absentees=False)
    assert second.get_json()['messages_queued'] == 0

    rows = store.table('attendance').eq('date', '2025-03-03').execute()
    assert len(rows) == 3
    assert {r['studentid']: r['status'] for r in rows} == {101: 'Present', 102: 'Absent', 103: 'Present'}

    messages = message_rows(store)
    assert [m['number'] for m in messages] == ['923001111111', '923002222222']
    assert '*03-03-2025*' in messages[0]['text']
    assert messages[0]['class_id'] == class_id and messages[0]['sent'] == 0


def test_day_sheet_shows_unmarked(client, staff_headers, school):
    class_id = school['class']['id']
    response = client.get(f'/api/attendance/{class_id}?date=2025-03-03', headers=staff_headers)
    assert {e['status'] for e in response.get_json()} == {'Unmarked'}

    _mark(client, staff_headers, class_id, '2025-03-03', {101: 'Present', 102: 'Absent', 103: 'Present'})
    sheet = client.get(f'/api/attendance/{class_id}?date=2025-03-03', headers=staff_headers).get_json()
    assert [(e['student']['name'], e['status']) for e in sheet] == [
        ('Ali Raza', 'Present'), ('Bilal Ahmed', 'Absent'), ('Sara Noor', 'Present')]


def _seed_month(client, headers, class_id):
    days = ['2025-03-03', '2025-03-04', '2025-03-05', '2025-03-06']
    for i, day in enumerate(days):
        _mark(client, headers, class_id, day,
              {101: 'Present', 102: 'Absent' if i else 'Present', 103: 'Present' if i % 2 else 'Absent'},
              notify_absentees=False)


def test_period_report(client, staff_headers, school):
    class_id = school['class']['id']
    _seed_month(client, staff_headers, class_id)
    server.app.config['MAX_ROWS_PER_REQUEST'] = 5

    response = client.get(f'/api/attendance/report?class_id={class_id}&start=2025-03-01&end=2025-03-31',
                          headers=staff_headers)
    data = response.get_json()

    by_name = {s['name']: s for s in data['students']}
    assert list(by_name) == ['Ali Raza', 'Bilal Ahmed', 'Sara Noor']
    assert by_name['Ali Raza']['percentage_str'] == '100.0'
    assert (by_name['Bilal Ahmed']['present'], by_name['Bilal Ahmed']['absent']) == (1, 3)
    assert by_name['Sara Noor']['percentage_str'] == '50.0'
    # 4 + 1 + 2 present out of 12 records
    assert data['overall_percentage'] == round(7 / 12 * 100, 2)
    assert [s['name'] for s in data['at_risk']] == ['Bilal Ahmed', 'Sara Noor']


def test_report_validates_range(client, staff_headers, school):
    base = f"/api/attendance/report?class_id={school['class']['id']}"
    assert client.get(base + '&start=2025-03-10&end=2025-03-01', headers=staff_headers).status_code == 400
    assert client.get(base + '&start=yesterday&end=2025-03-01', headers=staff_headers).status_code == 400
    assert client.get('/api/attendance/report?start=2025-03-01&end=2025-03-02',
                      headers=staff_headers).status_code == 400


def test_send_report_queues_one_message_per_number(client, staff_headers, school, store):
    class_id = school['class']['id']
    _seed_month(client, staff_headers, class_id)

    response = client.post('/api/attendance/report/send',
                           json={'class_id': class_id, 'start': '2025-03-01', 'end': '2025-03-31'},
                           headers=staff_headers)
    assert response.get_json()['messages_queued'] == 2
    assert 'Attendance Report for *Ali Raza*' in message_rows(store)[0]['text']

    empty = client.post('/api/attendance/report/send',
                        json={'class_id': class_id, 'start': '2024-01-01', 'end': '2024-01-31'},
                        headers=staff_headers)
    assert empty.status_code == 400


def test_report_export(client, staff_headers, school):
    class_id = school['class']['id']
    _seed_month(client, staff_headers, class_id)
    response = client.get(f'/api/attendance/report/export?class_id={class_id}&start=2025-03-01&end=2025-03-31',
                          headers=staff_headers)

    assert response.status_code == 200
    assert response.mimetype == 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'
    assert response.data[:2] == b'PK'


def test_trend_and_status(client, staff_headers, school):
    class_id = school['class']['id']
    today = server.school_today()
    for offset in (2, 1):
        day = (today - datetime.timedelta(days=offset)).isoformat()
        _mark(client, staff_headers, class_id, day, {101: 'Present', 102: 'Absent', 103: 'Present'},
              notify_absentees=False)

    trend = client.get(f'/api/attendance/trend/{class_id}', headers=staff_headers).get_json()
    assert [d['present_count'] for d in trend['days']] == [2, 2]
    assert trend['graph'].startswith('data:image/png;base64,')

    status = client.get('/api/attendance/status/102', headers=staff_headers).get_json()
    assert status['status'] == 'Critical'
    assert status['total_days'] == 2 and status['present'] == 0


def test_failed_save_keeps_previous_attendance(client, staff_headers, school, store, monkeypatch):
    class_id = school['class']['id']
    _mark(client, staff_headers, class_id, '2025-03-03', {101: 'Present', 102: 'Present', 103: 'Present'})

    fail_writes(monkeypatch, 'attendance')
    response = _mark(client, staff_headers, class_id, '2025-03-03', {101: 'Absent', 102: 'Absent', 103: 'Absent'})
    assert response.status_code == 500

    rows = store.table('attendance').eq('date', '2025-03-03').execute()
    assert sorted(r['status'] for r in rows) == ['Present', 'Present', 'Present']
    assert message_rows(store) == []


def test_records_must_be_objects(client, staff_headers, school):
    response = client.post(f"/api/attendance/{school['class']['id']}",
                           json={'date': '2025-03-03', 'records': ['x']}, headers=staff_headers)
    assert response.status_code == 400
