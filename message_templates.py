# =================================================================
#   SchoolDesk - WhatsApp Message Templates
#   Plain-text bodies (WhatsApp *bold* markup) for every message
#   the office queues in the outbox.
# =================================================================

import datetime
import functools
import html

from config import Config

TEMPLATE_TYPES = ('WELCOME', 'TEST_SCHEDULED', 'TEST_CLEAR', 'ADMISSION', 'FOLLOW_UP')


def plain_text(func):
    """Stored names and titles are HTML-escaped; WhatsApp bodies carry the plain characters."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        return html.unescape(func(*args, **kwargs))
    return wrapper


def _parse_datetime(value):
    if isinstance(value, datetime.datetime):
        return value
    if isinstance(value, datetime.date):
        return datetime.datetime(value.year, value.month, value.day)
    return datetime.datetime.fromisoformat(str(value).replace('Z', '+00:00'))


def _ordinal(day):
    if 11 <= day % 100 <= 13:
        return f"{day}th"
    suffix = {1: 'st', 2: 'nd', 3: 'rd'}.get(day % 10, 'th')
    return f"{day}{suffix}"


def format_test_time(value):
    """'Monday, Mar 3rd at 2:30 PM'; a missing date reads 'Scheduled Time'."""
    if not value:
        return "Scheduled Time"
    dt = _parse_datetime(value)
    hour = dt.hour % 12 or 12
    return f"{dt.strftime('%A, %b')} {_ordinal(dt.day)} at {hour}:{dt.minute:02d} {'AM' if dt.hour < 12 else 'PM'}"


@plain_text
def generate_message_template(template_type, inquiry, extra_data=None):
    """
    Build the admission pipeline message for one inquiry.

    Args:
        template_type: One of TEMPLATE_TYPES.
        inquiry: Inquiry row (needs 'name' and 'fathername').
        extra_data: {'date': ...} for TEST_SCHEDULED.

    Returns:
        str: The message text, or "" for an unknown type.
    """
    extra_data = extra_data or {}
    school = Config.SCHOOL_NAME
    syllabus = Config.ADMISSION_SYLLABUS_URL
    parent = inquiry.get('fathername')
    student = inquiry.get('name')

    if template_type == 'WELCOME':
        return (
            f"Respected *{parent}*,\n\nThank you for visiting *{school}*. We have successfully recorded "
            f"the admission inquiry for *{student}*.\n\nDo you have any specific questions regarding the "
            f"curriculum or facilities? \n Admission test syllabus can be found on this link: {syllabus}"
        )
    if template_type == 'TEST_SCHEDULED':
        return (
            f"Respected Parent,\n\nThe admission test for *{student}* has been scheduled.\n\n"
            f"📅 *When:* {format_test_time(extra_data.get('date'))}\n\n"
            f"Please ensure punctual arrival at the campus. Admission test syllabus can be found on this link: {syllabus}"
        )
    if template_type == 'TEST_CLEAR':
        return (
            f"🎉 *Congratulations!*\n\nWe are pleased to inform you that *{student}* has successfully cleared "
            f"the admission test at *{school}*.\n\nPlease visit the administration office for fee submission "
            f"and final formalities."
        )
    if template_type == 'ADMISSION':
        return (
            f"✅ *Admission Confirmed*\n\nThe admission process for *{student}* at *{school}* is now complete."
            f"\n\nWelcome to the family! 🎓"
        )
    if template_type == 'FOLLOW_UP':
        return (
            f"Respected Parent,\n\nYou recently visited *{school}* regarding the admission application for "
            f"*{student}*.\n\nWould you like to schedule the *Admission Test* now? Please let us know so we "
            f"can reserve a slot for you."
        )
    return ""


@plain_text
def family_welcome_message(fathername, student_names):
    """One welcome per family, naming every sibling."""
    school = Config.SCHOOL_NAME.upper()
    names = [n for n in student_names if n] or ["your child"]
    return (
        f"*Mr./Mrs. {fathername or 'Parent'},*\n\n"
        f"We have received the admission inquiry for {' & '.join(names)} at {school}. "
        f"Thank you for visiting *{school}*.\n\n"
        f"If you have any queries feel free to contact on {Config.SCHOOL_PHONE}\n\n"
        f"For Admission Test Syllabus, please visit:\n🌐 {Config.ADMISSION_SYLLABUS_URL}\n\n"
        f"BEST REGARDS,\n\nADMISSION OFFICE\n{school}"
    )


# =================================================================
#   Attendance
# =================================================================

@plain_text
def absentee_message(fathername, student_name, date):
    date_str = _parse_datetime(date).strftime('%d-%m-%Y')
    return (
        f"*Mr./Mrs. {fathername}*,\n\nKindly be informed that your child *{student_name}* is absent on "
        f"*{date_str}*. \n*Best Regards,*\nManagement\n{Config.SCHOOL_NAME.upper()}"
    )


@plain_text
def attendance_report_message(summary, start_date, end_date):
    start = _parse_datetime(start_date).strftime('%d-%b')
    end = _parse_datetime(end_date).strftime('%d-%b')
    return (
        f"Dear Parent,\n\nAttendance Report for *{summary['name']}* ({start} to {end}):\n\n"
        f"✅ Present: {summary['present']}\n❌ Absent: {summary['absent']}\n"
        f"📊 Percentage: {summary['percentage_str']}%\n\n"
        f"Regular attendance ensures better learning.\n\nRegards,\n{Config.SCHOOL_NAME.upper()}"
    )


# =================================================================
#   Fees
# =================================================================

def _rs(amount):
    if isinstance(amount, float) and amount.is_integer():
        amount = int(amount)
    return f"Rs. {amount}"


@plain_text
def fee_reminder_message(defaulter):
    """Formal dues notice; only non-zero categories are listed."""
    name = defaulter['name']
    lines = [
        f"Subject: Notice of Outstanding Fee Dues\n\nDear Parent/Guardian of {name},\n\n"
        f"We hope this message finds you well.\n\nThis is a formal reminder regarding the outstanding "
        f"account balance for {name}. Below is the summary of the pending dues:\n\n"
    ]
    labels = [
        ('current_tuition', 'Current Tuition'),
        ('prev_tuition', 'Previous Tuition'),
        ('annual_charges', 'Annual Charges'),
        ('stationery_charges', 'Stationery Charges'),
        ('arrears', 'Arrears / Other'),
    ]
    for key, label in labels:
        if defaulter.get(key, 0) > 0:
            lines.append(f"- {label}: {_rs(defaulter[key])}\n")
    lines.append(
        f"\nTotal Amount Payable: {_rs(defaulter['total_pending'])}\n\nWe kindly request you to clear these "
        f"dues at your earliest convenience to ensure uninterrupted access to school services. If you have "
        f"already made this payment, please disregard this notice.\n\nSincerely,\nAdministration"
    )
    return ''.join(lines)


# =================================================================
#   Complaints
# =================================================================

@plain_text
def complaint_received_message(title):
    return (
        f"*Complaint Received* 📬\n\nDear Parent,\nYour complaint regarding \"*{title}*\" has been "
        f"successfully lodged. We will look into it shortly.\n\nThank you,\nCampus Administration"
    )


@plain_text
def complaint_assigned_message(title):
    return (
        f"*Complaint Update* 🧑‍🏫\n\nDear Parent,\nYour complaint \"*{title}*\" has been assigned to a "
        f"concerned staff member for review and resolution."
    )


@plain_text
def complaint_admin_alert(student_name, title, text, against, assigned_to):
    return (
        f"*New Complaint Alert* ⚠️\n\n*Student:* {student_name}\n*Title:* {title}\n*Details:* {text}\n"
        f"*Against:* {against or 'N/A'}\n*Assigned To:* {assigned_to or 'N/A'}"
    )


@plain_text
def complaint_against_changed_message(title, student_name, old_against, new_against):
    return (
        f"*Complaint Details Updated* 📝\n\n*Title:* {title}\n*Student:* {student_name}\n\n"
        f"This complaint's *'Against'* field has been changed.\n*From:* {old_against or 'N/A'}\n"
        f"*To:* {new_against or 'N/A'}"
    )


@plain_text
def complaint_reassigned_admin_message(title, student_name, old_assignee, new_assignee):
    return (
        f"*Complaint Re-Assigned* 🔁\n\n*Title:* {title}\n*Student:* {student_name}\n"
        f"*From:* {old_assignee or 'N/A'}\n*To:* {new_assignee or 'N/A'}"
    )


@plain_text
def complaint_reassigned_parent_message(title):
    return (
        f"*Complaint Update* 🧑‍🏫\n\nDear Parent,\nThere is an update on your complaint \"*{title}*\". "
        f"It has been forwarded to another staff member for further action."
    )


@plain_text
def complaint_closed_parent_message(title, status, notes):
    return (
        f"*Complaint {status}* ✅\n\nDear Parent,\nYour complaint \"*{title}*\" has been marked as "
        f"*{status}*.\n\n*Resolution Notes:*\n{notes or 'No additional notes.'}"
    )


@plain_text
def complaint_closed_admin_message(title, student_name, status, notes):
    return (
        f"*Complaint Status Update* 📋\n\n*Title:* {title}\n*Student:* {student_name}\n"
        f"*New Status:* {status}\n*Final Notes:* {notes or 'N/A'}"
    )


# =================================================================
#   Notices & Diary
# =================================================================

NOTICE_PLACEHOLDERS = ('name', 'fathername', 'id', 'class', 'date')


@plain_text
def personalise_notice(template, student, class_name, date):
    """Fill {{name}}, {{fathername}}, {{id}}, {{class}} and {{date}} for one student."""
    values = {
        'name': student.get('name') or '',
        'fathername': student.get('fathername') or '',
        'id': str(student.get('studentid') or ''),
        'class': class_name or '',
        'date': _parse_datetime(date).strftime('%d-%m-%Y'),
    }
    text = template
    for key in NOTICE_PLACEHOLDERS:
        text = text.replace('{{' + key + '}}', values[key])
    return text.strip()


@plain_text
def diary_message(entry, class_name, date):
    """Diary text as sent; entries that don't name the class get the dated class header."""
    entry = entry.strip()
    if class_name and class_name in entry:
        return entry
    return f"📅 {_parse_datetime(date).date().isoformat()} | 🏫 {class_name}\n\n{entry}"
