import outbox


def test_outbox_listing_and_actions(client, staff_headers, store):
    first = outbox.queue_message(store, '923001111111', 'Holiday tomorrow', class_id=1)
    outbox.queue_message(store, '923002222222', 'Holiday tomorrow', class_id=1)
    outbox.queue_message(store, '923003333333', 'Exam schedule', class_id=2)

    listed = client.get('/api/messages', headers=staff_headers).get_json()
    assert {m['text']: m['duplicate_count'] for m in listed} == {'Holiday tomorrow': 2, 'Exam schedule': 1}

    assert len(client.get('/api/messages?class_id=2', headers=staff_headers).get_json()) == 1
    assert client.get('/api/messages?status=queued', headers=staff_headers).status_code == 400

    assert client.post(f"/api/messages/{first['id']}/sent", headers=staff_headers).status_code == 200
    sent = client.get('/api/messages?status=sent', headers=staff_headers).get_json()
    assert [m['id'] for m in sent] == [first['id']]

    assert client.delete(f"/api/messages/{first['id']}", headers=staff_headers).status_code == 200
    assert client.delete(f"/api/messages/{first['id']}", headers=staff_headers).status_code == 404


def test_manual_dispatch_without_gateway(client, admin_headers, staff_headers):
    assert client.post('/api/messages/dispatch', headers=staff_headers).status_code == 403
    response = client.post('/api/messages/dispatch', headers=admin_headers)
    assert response.get_json()['status'] == 'disabled'


def test_advance_lifecycle(client, admin_headers, staff_headers):
    created = client.post('/api/advances', json={'amount': 10000, 'reason': 'Medical'}, headers=staff_headers)
    assert created.status_code == 201
    advance_id = created.get_json()['advance']['id']

    # cannot repay before approval
    assert client.post(f'/api/advances/{advance_id}/payments', json={'amount': 100},
                       headers=admin_headers).status_code == 409
    assert client.post(f'/api/advances/{advance_id}/decision', json={'status': 'approved'},
                       headers=staff_headers).status_code == 403

    decided = client.post(f'/api/advances/{advance_id}/decision', json={'status': 'approved'}, headers=admin_headers)
    assert decided.get_json()['advance_status'] == 'approved'
    assert client.post(f'/api/advances/{advance_id}/decision', json={'status': 'rejected'},
                       headers=admin_headers).status_code == 409

    repaid = client.post(f'/api/advances/{advance_id}/payments', json={'amount': 4000}, headers=admin_headers)
    assert repaid.get_json()['remaining'] == 6000
    assert client.post(f'/api/advances/{advance_id}/payments', json={'amount': 7000},
                       headers=admin_headers).status_code == 400

    mine = client.get('/api/advances', headers=staff_headers).get_json()
    assert len(mine) == 1
    assert mine[0]['repaid'] == 4000 and mine[0]['remaining'] == 6000


def test_staff_only_see_their_own_advances(client, admin_headers, staff_headers):
    client.post('/api/advances', json={'amount': 500}, headers=admin_headers)
    client.post('/api/advances', json={'amount': 700}, headers=staff_headers)

    assert [a['amount'] for a in client.get('/api/advances', headers=staff_headers).get_json()] == [700]
    assert len(client.get('/api/advances', headers=admin_headers).get_json()) == 2
    assert client.post('/api/advances', json={'amount': 0}, headers=staff_headers).status_code == 400


def test_manual_dispatch_reports_gateway_timeout(client, admin_headers, store, monkeypatch):
    from config import Config

    outbox.queue_message(store, '923001111111', 'Holiday tomorrow')

    def fake_urlopen(req, timeout):
        raise TimeoutError('timed out')

    monkeypatch.setattr(Config, 'MESSAGE_GATEWAY_URL', 'http://gateway/send')
    monkeypatch.setattr(outbox.urllib.request, 'urlopen', fake_urlopen)

    response = client.post('/api/messages/dispatch', headers=admin_headers)
    assert response.status_code == 503
    assert response.get_json()['status'] == 'offline'
