"""
SchoolDesk - Test Configuration and Fixtures
"""
import os
import sqlite3
import tempfile

import pytest

# Set testing environment before the app reads its configuration
os.environ['FLASK_ENV'] = 'testing'
os.environ['SECRET_KEY'] = 'test-secret-key-for-testing-only'
os.environ['DATABASE_PATH'] = os.path.join(tempfile.gettempdir(), 'schooldesk_test.db')
os.environ['LOG_FILE'] = os.path.join(tempfile.gettempdir(), 'schooldesk_test.log')
os.environ['MESSAGE_GATEWAY_URL'] = ''

import server
from database_setup import create_schema, create_admin, hash_password
from db_client import BackendClient, BackendError, TableQuery

ADMIN_PASSWORD = 'admin-pass-123'
STAFF_PASSWORD = 'staff-pass-123'


@pytest.fixture
def db_path(tmp_path):
    """Fresh schema with one admin and one staff profile."""
    path = str(tmp_path / 'school.db')
    conn = sqlite3.connect(path)
    create_schema(conn)
    create_admin(conn, email='admin', password=ADMIN_PASSWORD)
    conn.execute(
        "INSERT INTO profiles (email, password, role) VALUES (?, ?, 'staff')",
        ('teacher@school', hash_password(STAFF_PASSWORD))
    )
    conn.commit()
    conn.close()
    return path


@pytest.fixture
def store(db_path):
    return BackendClient(db_path)


@pytest.fixture
def client(db_path):
    server.app.config['DATABASE_PATH'] = db_path
    server.app.config['MAX_ROWS_PER_REQUEST'] = 1000
    with server.app.test_client() as test_client:
        yield test_client


def _login(client, email, password):
    response = client.post('/api/login', json={'email': email, 'password': password})
    assert response.status_code == 200, response.get_json()
    return {'Authorization': f"Bearer {response.get_json()['token']}"}


@pytest.fixture
def admin_headers(client):
    return _login(client, 'admin', ADMIN_PASSWORD)


@pytest.fixture
def staff_headers(client):
    return _login(client, 'teacher@school', STAFF_PASSWORD)


@pytest.fixture
def school(store):
    """One class with three active students, one of them without a mobile number."""
    klass = store.table('classes').insert({'name': 'Class 5'})[0]
    students = store.table('students').insert([
        {'studentid': 101, 'name': 'Ali Raza', 'fathername': 'Raza Khan', 'mobilenumber': '923001111111',
         'class_id': klass['id'], 'monthly_fee': 5000, 'status': 'active'},
        {'studentid': 102, 'name': 'Bilal Ahmed', 'fathername': 'Ahmed Ali', 'mobilenumber': '923002222222',
         'class_id': klass['id'], 'monthly_fee': 4000, 'status': 'active'},
        {'studentid': 103, 'name': 'Sara Noor', 'fathername': 'Noor Din', 'mobilenumber': None,
         'class_id': klass['id'], 'monthly_fee': 4500, 'status': 'active'},
    ])
    return {'class': klass, 'students': students}


def message_rows(store):
    return store.table('messages').order('id').execute()


def fail_writes(monkeypatch, table, method='insert'):
    """Make `method` fail for one table so a multi-step write breaks part-way."""
    original = getattr(TableQuery, method)

    def failing(self, *args, **kwargs):
        if self.table_name == table:
            raise BackendError(f"{table} is unavailable")
        return original(self, *args, **kwargs)

    monkeypatch.setattr(TableQuery, method, failing)
