import json

import pytest

import admissions


@pytest.mark.parametrize('fee, expected_total', [
    ('{"admission": 8000, "monthly": 5000, "annual": 5000, "stationery": 5000}', 23000),
    ({'admission_fee': 1000, 'monthly_fee': 2000}, 3000),
    (7000, 7000),
    ('7000', 7000),
    ('not json', 0),
    (None, 0),
])
def test_parse_fee_total(fee, expected_total):
    assert admissions.parse_fee(fee)['total'] == expected_total


def test_parse_fee_breakdown_accepts_long_keys():
    parsed = admissions.parse_fee({'admission_fee': '1000', 'stationery_charges': 250})
    assert parsed == {'admission': 1000.0, 'monthly': 0.0, 'annual': 0.0, 'stationery': 250.0, 'total': 1250.0}


def test_quoted_fee_defaults_and_overrides():
    assert json.loads(admissions.quoted_fee_json()) == admissions.DEFAULT_QUOTED_FEE

    quoted = json.loads(admissions.quoted_fee_json({'monthly': 4500, 'annual': ''}))
    assert quoted['monthly'] == 4500
    assert quoted['annual'] == 5000


def test_group_by_phone_keeps_siblings_together():
    rows = [
        {'id': 1, 'name': 'Hamza', 'fathername': 'Imran', 'mobilenumber': '0300 1'},
        {'id': 2, 'name': 'Zoya', 'fathername': 'Kashif', 'mobilenumber': '0300 2'},
        {'id': 3, 'name': 'Ayesha', 'fathername': 'Imran', 'mobilenumber': '0300 1 '},
    ]
    families = admissions.group_by_phone(rows)

    assert [f['mobilenumber'] for f in families] == ['0300 1', '0300 2']
    assert [c['name'] for c in families[0]['children']] == ['Hamza', 'Ayesha']


@pytest.mark.parametrize('term, matched', [('hamza', True), ('IMRAN', True), ('0300', True),
                                           ('zoya', False), ('', True)])
def test_matches_search(term, matched):
    inquiry = {'name': 'Hamza', 'fathername': 'Imran', 'mobilenumber': '03001234567'}
    assert admissions.matches_search(inquiry, term) is matched
