# =================================================================
#   SchoolDesk - Fee Invoices, Payments & Defaulters
#
#   Invoice lifecycle:
#     unpaid --(part payment)--> partial --(balance cleared)--> paid
#     unpaid/partial --(next month's invoice generated)--> expired
#   Expired invoices have their open balances carried onto the new
#   invoice as arrears lines.
# =================================================================

import re
import calendar
import datetime
import logging

from db_client import BackendError, fetch_all, fetch_in_chunks

logger = logging.getLogger(__name__)

OPEN_STATUSES = ('unpaid', 'partial')
INVOICE_STATUSES = ('unpaid', 'partial', 'paid', 'expired')
OVERPAY_TOLERANCE = 0.1

_MONTHS = re.compile(r'(jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)', re.IGNORECASE)
_MONTH_INDEX = {m: i for i, m in enumerate(
    ['jan', 'feb', 'mar', 'apr', 'may', 'jun', 'jul', 'aug', 'sep', 'oct', 'nov', 'dec'], start=1)}


class FeeError(Exception):
    """A fee operation the office cannot perform; `status_code` is the HTTP status to answer with."""

    def __init__(self, message, status_code=400):
        super().__init__(message)
        self.status_code = status_code


def to_date(value):
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    return datetime.date.fromisoformat(str(value)[:10])


def month_bounds(value):
    """First and last day of the month containing `value`."""
    day = to_date(value)
    last = calendar.monthrange(day.year, day.month)[1]
    return day.replace(day=1), day.replace(day=last)


def default_fee_label(invoice_date):
    day = to_date(invoice_date)
    return f"Tuition Fee - {calendar.month_name[day.month]} - {day.year}"


def invoice_status(total_paid, grand_total):
    if total_paid >= grand_total:
        return 'paid'
    if total_paid > 0:
        return 'partial'
    return 'unpaid'


def paid_by_detail(payments):
    """{invoice_detail_id: amount paid} from payment rows."""
    totals = {}
    for payment in payments:
        detail_id = payment.get('invoice_detail_id')
        if detail_id:
            totals[detail_id] = totals.get(detail_id, 0) + (payment.get('amount') or 0)
    return totals


def _group(rows, key):
    grouped = {}
    for row in rows:
        grouped.setdefault(row[key], []).append(row)
    return grouped


def _details_and_payments(client, invoice_ids):
    """Details and payments for many invoices, grouped by invoice id."""
    if not invoice_ids:
        return {}, {}
    details = fetch_in_chunks(client, 'fee_invoice_details', 'invoice_id', invoice_ids)
    payments = fetch_in_chunks(client, 'fee_payments', 'invoice_id', invoice_ids)
    return _group(details, 'invoice_id'), _group(payments, 'invoice_id')


# =================================================================
#   Invoice generation
# =================================================================

def eligible_students(client, class_id, invoice_date):
    """
    Active students of a class who have no live (non-expired) invoice in the
    month of `invoice_date`. Returns (eligible, excluded_count).
    """
    students = fetch_all(
        client.table('students').eq('class_id', class_id).eq('status', 'active').order('name'),
        order_key='studentid'
    )
    first, last = month_bounds(invoice_date)
    invoiced = fetch_in_chunks(
        client, 'fee_invoices', 'student_id', [s['studentid'] for s in students],
        columns=('id', 'student_id'),
        apply=lambda q: q.gte('invoice_date', first.isoformat())
                         .lte('invoice_date', last.isoformat())
                         .neq('status', 'expired')
    )
    invoiced_ids = {inv['student_id'] for inv in invoiced}
    eligible = [s for s in students if s['studentid'] not in invoiced_ids]
    return eligible, len(students) - len(eligible)


def carry_over(client, student_id, month_start):
    """
    Open balances from every unpaid/partial invoice dated before `month_start`.

    Returns (carried_details, carried_total, invoice_ids_to_expire). Each
    detail keeps its fee_type; the description notes the original invoice
    date.
    """
    old_invoices = (
        client.table('fee_invoices')
        .eq('student_id', student_id)
        .lt('invoice_date', month_start.isoformat())
        .in_('status', OPEN_STATUSES)
        .order('invoice_date')
        .execute()
    )
    details_by_invoice, payments_by_invoice = _details_and_payments(client, [inv['id'] for inv in old_invoices])

    carried = []
    carried_total = 0
    for invoice in old_invoices:
        paid = paid_by_detail(payments_by_invoice.get(invoice['id'], []))
        for detail in details_by_invoice.get(invoice['id'], []):
            remaining = (detail['amount'] or 0) - paid.get(detail['id'], 0)
            if remaining > 0:
                carried_total += remaining
                carried.append({
                    'fee_type': detail['fee_type'],
                    'description': f"{detail['description']} (Arrears: {invoice['invoice_date']})",
                    'amount': remaining,
                })
    return carried, carried_total, [inv['id'] for inv in old_invoices]


def generate_invoices(client, student_ids, invoice_date, due_date=None, annual_charges=0,
                      stationery_charges=0, fee_label=None):
    """
    Create this month's invoice for each student, consolidating older open
    invoices into it.

    Returns:
        dict: generated, failed, expired counts and the new invoice ids.
    """
    invoice_date = to_date(invoice_date)
    due_date = to_date(due_date) if due_date else invoice_date
    month_start, _ = month_bounds(invoice_date)
    label = fee_label or default_fee_label(invoice_date)
    annual = float(annual_charges or 0)
    stationery = float(stationery_charges or 0)

    students = fetch_in_chunks(client, 'students', 'studentid', student_ids, order_key='studentid')
    result = {'generated': 0, 'failed': len(set(student_ids)) - len(students), 'expired': 0, 'invoice_ids': []}

    for student in students:
        carried, carried_total, expire_ids = carry_over(client, student['studentid'], month_start)
        monthly = float(student.get('monthly_fee') or 0)
        grand_total = monthly + annual + stationery + carried_total

        details = []
        if monthly > 0:
            details.append({'fee_type': label, 'description': 'Monthly Tuition Charges', 'amount': monthly})
        if annual > 0:
            details.append({'fee_type': 'Annual Charges', 'description': 'Annual / Paper Funds', 'amount': annual})
        if stationery > 0:
            details.append({'fee_type': 'Stationery', 'description': 'Stationery / Books', 'amount': stationery})
        details.extend(carried)

        # Header, lines and expiry of the consolidated invoices land together
        try:
            with client.transaction():
                invoice = client.table('fee_invoices').insert({
                    'student_id': student['studentid'],
                    'invoice_date': invoice_date.isoformat(),
                    'due_date': due_date.isoformat(),
                    'total_amount': grand_total,
                    'status': 'unpaid',
                })[0]
                if details:
                    client.table('fee_invoice_details').insert([dict(d, invoice_id=invoice['id']) for d in details])
                if expire_ids:
                    client.table('fee_invoices').in_('id', expire_ids).update({
                        'status': 'expired',
                        'notes': f"Consolidated into Invoice #{invoice['id']}",
                    })
        except BackendError as e:
            logger.error(f"Invoice generation failed for {student['name']}: {e}")
            result['failed'] += 1
            continue

        result['expired'] += len(expire_ids)
        result['generated'] += 1
        result['invoice_ids'].append(invoice['id'])

    logger.info(f"Invoice generation complete - generated: {result['generated']}, "
                f"failed: {result['failed']}, expired: {result['expired']}")
    return result


def create_admission_invoice(client, student, admission_fee=0, annual_charges=0,
                             stationery_charges=0, discount=0, invoice_date=None):
    """First invoice for a newly admitted student. The discount is stored as a negative line."""
    invoice_date = to_date(invoice_date or datetime.date.today())
    monthly = float(student.get('monthly_fee') or 0)
    admission = float(admission_fee or 0)
    annual = float(annual_charges or 0)
    stationery = float(stationery_charges or 0)
    discount = float(discount or 0)

    lines = [
        (monthly, 'Tuition Fee', 'First Month Tuition'),
        (admission, 'Admission Fee', 'New Admission Charges'),
        (annual, 'Annual Funds', 'Annual/Paper Funds'),
        (stationery, 'Stationery', 'Books/Stationery'),
    ]
    details = [
        {'fee_type': fee_type, 'description': desc, 'amount': amount}
        for amount, fee_type, desc in lines if amount > 0
    ]
    if discount > 0:
        details.append({'fee_type': 'Discount', 'description': 'Admission Discount', 'amount': -discount})

    with client.transaction():
        invoice = client.table('fee_invoices').insert({
            'student_id': student['studentid'],
            'invoice_date': invoice_date.isoformat(),
            'due_date': invoice_date.isoformat(),
            'total_amount': (monthly + admission + annual + stationery) - discount,
            'status': 'unpaid',
        })[0]
        if details:
            client.table('fee_invoice_details').insert([dict(d, invoice_id=invoice['id']) for d in details])
    return invoice


# =================================================================
#   Payments
# =================================================================

def newer_invoice(client, invoice):
    """The latest live invoice for the same student dated after `invoice`, if any."""
    rows = (
        client.table('fee_invoices')
        .select('id', 'invoice_date')
        .eq('student_id', invoice['student_id'])
        .gt('invoice_date', invoice['invoice_date'])
        .neq('status', 'expired')
        .order('invoice_date', desc=True)
        .limit(1)
        .execute()
    )
    return rows[0] if rows else None


def invoice_with_balances(client, invoice_id):
    """
    Invoice, student, line items with paid/remaining balances, and whether
    a newer invoice has superseded it.
    """
    invoice = client.table('fee_invoices').eq('id', invoice_id).maybe_single()
    if invoice is None:
        raise FeeError(f"Invoice #{invoice_id} not found", status_code=404)

    student = client.table('students').eq('studentid', invoice['student_id']).maybe_single()
    newer = newer_invoice(client, invoice)
    if newer:
        return {'invoice': invoice, 'student': student, 'superseded_by': newer['id'], 'items': []}

    details = fetch_all(client.table('fee_invoice_details').eq('invoice_id', invoice_id))
    payments = fetch_all(client.table('fee_payments').eq('invoice_id', invoice_id))
    paid = paid_by_detail(payments)

    items = []
    for detail in details:
        total_amount = detail['amount'] or 0
        already_paid = paid.get(detail['id'], 0)
        remaining = total_amount - already_paid
        items.append(dict(detail, total_amount=total_amount, already_paid=already_paid,
                          remaining_balance=remaining, is_fully_paid=remaining <= 0))

    grand_total = invoice['total_amount'] or 0
    previously_paid = sum(paid.values())
    return {
        'invoice': invoice,
        'student': student,
        'superseded_by': None,
        'items': items,
        'grand_total': grand_total,
        'total_previously_paid': previously_paid,
        'global_balance': grand_total - previously_paid,
    }


def pay_invoice(client, invoice_id, amounts, notes='', payment_method='cash', paid_at=None):
    """
    Record a payment against individual invoice lines.

    Args:
        amounts: {invoice_detail_id: amount paying now}

    Returns:
        dict: receipt data (student, items, total paid now, balance after payment, new status).

    Raises:
        FeeError: 409 when superseded, 400 on bad amounts or overpayment.
    """
    state = invoice_with_balances(client, invoice_id)
    if state['superseded_by']:
        raise FeeError(
            f"Invoice #{invoice_id} has been superseded by invoice #{state['superseded_by']}",
            status_code=409
        )

    items_by_id = {item['id']: item for item in state['items']}
    paying = {}
    for raw_id, raw_amount in (amounts or {}).items():
        try:
            detail_id = int(raw_id)
            amount = float(raw_amount or 0)
        except (TypeError, ValueError):
            raise FeeError("Payment amounts must be numbers")
        if detail_id not in items_by_id:
            raise FeeError(f"Line #{detail_id} does not belong to invoice #{invoice_id}")
        if amount < 0:
            raise FeeError("Payment amounts cannot be negative")
        if amount > items_by_id[detail_id]['remaining_balance'] + OVERPAY_TOLERANCE:
            raise FeeError(f"Payment for line #{detail_id} exceeds its remaining balance")
        if amount > 0:
            paying[detail_id] = amount

    total_paying = sum(paying.values())
    if total_paying <= 0:
        raise FeeError("Nothing to pay")

    paid_at = paid_at or datetime.datetime.now(datetime.timezone.utc).isoformat(timespec='seconds')
    new_status = invoice_status(state['total_previously_paid'] + total_paying, state['grand_total'])
    with client.transaction():
        client.table('fee_payments').insert([
            {
                'invoice_id': invoice_id,
                'invoice_detail_id': detail_id,
                'amount': amount,
                'payment_method': payment_method,
                'notes': notes,
                'paid_at': paid_at,
            }
            for detail_id, amount in paying.items()
        ])
        client.table('fee_invoices').eq('id', invoice_id).update({'status': new_status})
    logger.info(f"Payment recorded - InvoiceID: {invoice_id}, Amount: {total_paying}, Status: {new_status}")

    return {
        'invoice_id': invoice_id,
        'student': state['student'],
        'items': [dict(item, paying_now=paying.get(item['id'], 0)) for item in state['items']],
        'total_paid_now': total_paying,
        'balance_after_payment': state['global_balance'] - total_paying,
        'status': new_status,
    }


# =================================================================
#   Defaulters
# =================================================================

def categorize_pending(detail, invoice_date, end_date):
    """
    Which defaulter column an unpaid line belongs to: current_tuition,
    prev_tuition, annual_charges, stationery_charges or arrears.

    Tuition lines naming a month count as current when that month is the
    month of `end_date`; otherwise the invoice date decides.
    """
    text = f"{detail.get('fee_type') or ''} {detail.get('description') or ''}".lower()
    end = to_date(end_date)

    if 'tuition' in text:
        match = _MONTHS.search(text)
        if match:
            current = _MONTH_INDEX[match.group(0).lower()] == end.month
        else:
            inv = to_date(invoice_date)
            current = inv.month == end.month and inv.year == end.year
        return 'current_tuition' if current else 'prev_tuition'
    if 'annual' in text:
        return 'annual_charges'
    if 'stationery' in text or 'stationary' in text:
        return 'stationery_charges'
    return 'arrears'


def build_defaulters(students, invoices, details_by_invoice, payments_by_invoice, end_date, today=None):
    """
    Merge open invoices into one dues row per student.

    Pending amounts come from the student's latest invoice only. Payments
    made during `today`'s calendar month across all of the student's open
    invoices are reported as amount_received_this_month. Students with
    nothing pending are left out.
    """
    today = to_date(today or datetime.date.today())
    invoices_by_student = _group(invoices, 'student_id')
    defaulters = []

    for student in students:
        student_invoices = invoices_by_student.get(student['studentid'])
        if not student_invoices:
            continue
        student_invoices = sorted(student_invoices, key=lambda inv: (inv['invoice_date'], inv['id']), reverse=True)
        latest = student_invoices[0]

        received = 0
        for invoice in student_invoices:
            for payment in payments_by_invoice.get(invoice['id'], []):
                paid_on = to_date(payment.get('paid_at') or invoice['invoice_date'])
                if paid_on.month == today.month and paid_on.year == today.year:
                    received += payment.get('amount') or 0

        totals = dict.fromkeys(
            ('current_tuition', 'prev_tuition', 'annual_charges', 'stationery_charges', 'arrears'), 0)
        paid = paid_by_detail(payments_by_invoice.get(latest['id'], []))
        for detail in details_by_invoice.get(latest['id'], []):
            pending = (detail.get('amount') or 0) - paid.get(detail['id'], 0)
            if pending > 0:
                totals[categorize_pending(detail, latest['invoice_date'], end_date)] += pending

        total_pending = sum(totals.values())
        if total_pending > 0:
            defaulters.append(dict(
                student,
                class_name=student.get('class_name') or 'Unknown',
                total_pending=total_pending,
                amount_received_this_month=received,
                **totals
            ))
    return defaulters


def find_defaulters(client, class_ids, start_date, end_date, today=None, chunk_size=150, page_size=1000):
    """Students of the given classes with open invoices dated in [start_date, end_date]."""
    students = fetch_all(
        client.table('students')
        .select('studentid', 'name', 'fathername', 'class_id', 'mobilenumber')
        .in_('class_id', class_ids)
        .order('name'),
        page_size=page_size,
        order_key='studentid'
    )
    if not students:
        return []

    class_names = {c['id']: c['name'] for c in client.table('classes').in_('id', class_ids).execute()}
    for student in students:
        student['class_name'] = class_names.get(student['class_id'])

    invoices = fetch_in_chunks(
        client, 'fee_invoices', 'student_id', [s['studentid'] for s in students],
        chunk_size=chunk_size, page_size=page_size,
        apply=lambda q: q.gte('invoice_date', to_date(start_date).isoformat())
                         .lte('invoice_date', to_date(end_date).isoformat())
                         .in_('status', OPEN_STATUSES)
    )
    details_by_invoice, payments_by_invoice = _details_and_payments(client, [inv['id'] for inv in invoices])
    return build_defaulters(students, invoices, details_by_invoice, payments_by_invoice, end_date, today)


# =================================================================
#   Listings & Reports
# =================================================================

def _student_filter(client, class_id=None, name=None):
    """
    Query selecting the ids of students in a class and/or matching a name
    fragment, or None when unfiltered. Used as an in_query subquery so a
    short name search never turns into a huge id list.
    """
    if not class_id and not name:
        return None
    query = client.table('students').select('studentid')
    if class_id:
        query.eq('class_id', class_id)
    if name:
        query.ilike('name', f"%{name}%")
    return query


def _attach_students(client, rows, key):
    ids = list({row[key] for row in rows})
    students = {s['studentid']: s for s in fetch_in_chunks(
        client, 'students', 'studentid', ids,
        columns=('studentid', 'name', 'fathername', 'class_id'), order_key='studentid')}
    for row in rows:
        row['student'] = students.get(row[key])
    return rows


def list_invoices(client, page=0, page_size=50, class_id=None, status=None, start_date=None,
                  end_date=None, search=None):
    """
    One page of invoices, newest first. A numeric search matches the invoice
    id, any other text matches the student name.
    """
    query = client.table('fee_invoices')
    search = (search or '').strip()
    if search.isdigit():
        query.eq('id', int(search))
        search = ''
    students = _student_filter(client, class_id, search)
    if students is not None:
        query.in_query('student_id', students)
    if status:
        query.eq('status', status)
    if start_date:
        query.gte('invoice_date', to_date(start_date).isoformat())
    if end_date:
        query.lte('invoice_date', to_date(end_date).isoformat())

    total = query.count()
    start = page * page_size
    rows = query.order('invoice_date', desc=True).order('id', desc=True).range(start, start + page_size - 1).execute()
    return {'items': _attach_students(client, rows, 'student_id'), 'total_count': total,
            'page': page, 'page_size': page_size}


def _payments_query(client, class_id=None, start_date=None, end_date=None, search=None):
    query = client.table('fee_payments')
    search = (search or '').strip()
    if search.isdigit():
        query.eq('id', int(search))
        search = ''
    students = _student_filter(client, class_id, search)
    if students is not None:
        invoices = client.table('fee_invoices').select('id').in_query('student_id', students)
        query.in_query('invoice_id', invoices)
    if start_date:
        query.gte('paid_at', to_date(start_date).isoformat())
    if end_date:
        # paid_at carries a time, so include the whole end day
        query.lt('paid_at', (to_date(end_date) + datetime.timedelta(days=1)).isoformat())
    return query


def _attach_payment_context(client, payments):
    invoice_ids = list({p['invoice_id'] for p in payments})
    invoices = {inv['id']: inv for inv in fetch_in_chunks(client, 'fee_invoices', 'id', invoice_ids)}
    detail_ids = list({p['invoice_detail_id'] for p in payments if p.get('invoice_detail_id')})
    details = {d['id']: d for d in fetch_in_chunks(client, 'fee_invoice_details', 'id', detail_ids)}
    for payment in payments:
        invoice = invoices.get(payment['invoice_id']) or {}
        detail = details.get(payment.get('invoice_detail_id')) or {}
        payment['student_id'] = invoice.get('student_id')
        payment['invoice_status'] = invoice.get('status')
        payment['fee_label'] = detail.get('fee_type') or 'N/A'
    return _attach_students(client, payments, 'student_id')


def list_receipts(client, page=0, page_size=50, **filters):
    """One page of payment receipts, most recent first."""
    query = _payments_query(client, **filters)
    total = query.count()
    start = page * page_size
    rows = query.order('paid_at', desc=True).order('id', desc=True).range(start, start + page_size - 1).execute()
    return {'items': _attach_payment_context(client, rows), 'total_count': total,
            'page': page, 'page_size': page_size}


def collection_report(client, **filters):
    """
    Every payment in the filtered range with totals per day and per
    payment method.
    """
    payments = _attach_payment_context(
        client, fetch_all(_payments_query(client, **filters).order('paid_at')))

    by_day = {}
    by_method = {}
    for payment in payments:
        day = str(payment['paid_at'])[:10]
        method = (payment.get('payment_method') or 'cash').lower()
        by_day[day] = by_day.get(day, 0) + payment['amount']
        by_method[method] = by_method.get(method, 0) + payment['amount']

    return {
        'payments': payments,
        'total_amount': sum(p['amount'] for p in payments),
        'by_day': [{'date': d, 'amount': by_day[d]} for d in sorted(by_day)],
        'by_method': by_method,
    }
