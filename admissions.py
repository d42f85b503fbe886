# =================================================================
#   SchoolDesk - Admission Inquiry Helpers
#   Pipeline: Inquiry -> Test Scheduled -> Test Clear -> Admission
# =================================================================

import json

INQUIRY_STATUSES = ('Inquiry', 'Test Scheduled', 'Test Clear', 'Admission')

DEFAULT_QUOTED_FEE = {'admission': 8000, 'monthly': 5000, 'annual': 5000, 'stationery': 5000}

# Status change -> WhatsApp template announcing it
STATUS_TEMPLATES = {
    'Test Scheduled': 'TEST_SCHEDULED',
    'Test Clear': 'TEST_CLEAR',
    'Admission': 'ADMISSION',
}

_FEE_KEYS = (
    ('admission', 'admission_fee'),
    ('monthly', 'monthly_fee'),
    ('annual', 'annual_charges'),
    ('stationery', 'stationery_charges'),
)


def _number(value):
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def parse_fee(fee):
    """
    Normalize a stored quoted fee into {admission, monthly, annual, stationery, total}.

    Accepts a JSON string, a dict (short or long key names) or a plain
    number. A plain number, or text that is not a JSON object, is treated
    as a total with no breakdown.
    """
    if isinstance(fee, str):
        try:
            fee = json.loads(fee)
        except ValueError:
            fee = _number(fee)

    if isinstance(fee, dict):
        parts = {short: _number(fee.get(short, fee.get(long))) for short, long in _FEE_KEYS}
        parts['total'] = sum(parts.values())
        return parts

    parts = dict.fromkeys((short for short, _ in _FEE_KEYS), 0.0)
    parts['total'] = _number(fee)
    return parts


def quoted_fee_json(fee=None):
    """Defaults overlaid with whatever the office quoted, serialized for storage."""
    quoted = dict(DEFAULT_QUOTED_FEE)
    if isinstance(fee, dict):
        for short, long in _FEE_KEYS:
            value = fee.get(short, fee.get(long))
            if value not in (None, ''):
                quoted[short] = _number(value)
    return json.dumps(quoted)


def group_by_phone(inquiries):
    """
    Siblings share a parent's mobile number. Returns one family entry per
    number, in first-seen order.
    """
    families = {}
    for inquiry in inquiries:
        number = (inquiry.get('mobilenumber') or '').strip()
        family = families.setdefault(number, {
            'mobilenumber': number,
            'fathername': inquiry.get('fathername'),
            'children': [],
        })
        family['children'].append(inquiry)
    return list(families.values())


def matches_search(inquiry, term):
    """Case-insensitive match on name, father name or mobile number."""
    term = (term or '').strip().lower()
    if not term:
        return True
    return any(term in str(inquiry.get(field) or '').lower()
               for field in ('name', 'fathername', 'mobilenumber'))
