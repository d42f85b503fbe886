import jwt

import server


def test_health_check(client):
    response = client.get('/api/health')
    assert response.status_code == 200
    assert response.get_json()['database'] == 'connected'
    assert response.headers['X-Content-Type-Options'] == 'nosniff'


def test_login_rejects_bad_password(client):
    response = client.post('/api/login', json={'email': 'admin', 'password': 'wrong'})
    assert response.status_code == 401

    response = client.post('/api/login', json={'email': 'admin'})
    assert response.status_code == 400


def test_login_token_carries_role(client):
    response = client.post('/api/login', json={'email': 'admin', 'password': 'admin-pass-123'})
    payload = jwt.decode(response.get_json()['token'], server.app.config['SECRET_KEY'], algorithms=["HS256"])
    assert payload['role'] == 'admin'


def test_routes_need_a_token(client):
    assert client.get('/api/students').status_code == 401
    response = client.get('/api/students', headers={'Authorization': 'Bearer not-a-token'})
    assert response.status_code == 401


def test_admin_routes_refuse_staff(client, staff_headers):
    response = client.post('/api/staff', json={'email': 'x', 'password': 'y'}, headers=staff_headers)
    assert response.status_code == 403


def test_create_staff_and_duplicate(client, admin_headers):
    body = {'email': 'accounts@school', 'password': 'pw'}
    assert client.post('/api/staff', json=body, headers=admin_headers).status_code == 201
    assert client.post('/api/staff', json=body, headers=admin_headers).status_code == 409

    emails = [p['email'] for p in client.get('/api/staff', headers=admin_headers).get_json()]
    assert 'accounts@school' in emails


def test_classes(client, staff_headers):
    response = client.post('/api/classes', json={'name': 'Prep'}, headers=staff_headers)
    assert response.status_code == 201
    assert [c['name'] for c in client.get('/api/classes', headers=staff_headers).get_json()] == ['Prep']
    assert client.post('/api/classes', json={}, headers=staff_headers).status_code == 400


def test_student_listing_pages_past_row_cap(client, staff_headers, school):
    server.app.config['MAX_ROWS_PER_REQUEST'] = 2
    response = client.get(f"/api/students?class_id={school['class']['id']}", headers=staff_headers)

    assert response.status_code == 200
    assert [s['name'] for s in response.get_json()] == ['Ali Raza', 'Bilal Ahmed', 'Sara Noor']


def test_admission_with_invoice(client, staff_headers, school, store):
    body = {
        'studentid': 201, 'name': 'Hamza Imran', 'fathername': 'Imran', 'mobilenumber': '923004444444',
        'class_id': school['class']['id'], 'monthly_fee': 3000,
        'invoice': {'admission_fee': 8000, 'annual_charges': 5000, 'stationery_charges': 5000,
                    'discount': 2000, 'invoice_date': '2025-04-01'},
    }
    response = client.post('/api/students', json=body, headers=staff_headers)

    assert response.status_code == 201
    data = response.get_json()
    assert data['student']['status'] == 'active'
    assert data['invoice']['total_amount'] == 3000 + 8000 + 5000 + 5000 - 2000
    assert store.table('fee_invoice_details').eq('invoice_id', data['invoice']['id']).count() == 5

    duplicate = client.post('/api/students', json=body, headers=staff_headers)
    assert duplicate.status_code == 409


def test_admission_requires_fields(client, staff_headers):
    response = client.post('/api/students', json={'name': 'No Id'}, headers=staff_headers)
    assert response.status_code == 400
    assert "studentid" in response.get_json()['error']


def test_update_leave_and_reactivate(client, staff_headers, school):
    assert client.put('/api/students/101', json={'monthly_fee': 5500},
                      headers=staff_headers).status_code == 200
    assert client.put('/api/students/999', json={'name': 'x'}, headers=staff_headers).status_code == 404

    assert client.post('/api/students/101/leave', headers=staff_headers).status_code == 200
    active = client.get('/api/students', headers=staff_headers).get_json()
    assert 101 not in [s['studentid'] for s in active]

    everyone = client.get('/api/students?include_inactive=true', headers=staff_headers).get_json()
    ali = next(s for s in everyone if s['studentid'] == 101)
    assert ali['status'] == 'inactive' and ali['monthly_fee'] == 5500

    client.post('/api/students/101/reactivate', headers=staff_headers)
    assert 101 in [s['studentid'] for s in client.get('/api/students', headers=staff_headers).get_json()]


def test_bulk_updates(client, staff_headers, school, store):
    other = store.table('classes').insert({'name': 'Class 6'})[0]

    response = client.post('/api/students/bulk/move', json={'studentids': [101, 102], 'class_id': other['id']},
                           headers=staff_headers)
    assert response.get_json()['updated'] == 2

    client.post('/api/students/bulk/fee', json={'studentids': '101,103', 'monthly_fee': 6000}, headers=staff_headers)
    client.post('/api/students/bulk/clear', json={'studentids': [103]}, headers=staff_headers)

    rows = {s['studentid']: s for s in store.table('students').execute()}
    assert rows[101]['class_id'] == other['id'] and rows[103]['class_id'] == school['class']['id']
    assert rows[101]['monthly_fee'] == 6000 and rows[102]['monthly_fee'] == 4000
    assert rows[103]['clear'] == 1

    assert client.post('/api/students/bulk/move', json={'studentids': [], 'class_id': 1},
                       headers=staff_headers).status_code == 400
