import math
import io
import base64
import logging
from datetime import datetime

# Matplotlib configuration for server-side rendering (no GUI)
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import matplotlib.dates as mdates

logger = logging.getLogger(__name__)


def calculate_status_and_improvement(present_count, total_days, target_percent=75.0, critical_percent=60.0):
    """
    Calculates a student's attendance status and improvement plan.

    Args:
        present_count (int): Number of days present.
        total_days (int): Number of marked days so far.
        target_percent (float): The target attendance percentage (default 75.0).
        critical_percent (float): The critical attendance threshold (default 60.0).

    Returns:
        dict: A dictionary containing:
            - current_percent (float)
            - status (str): 'Good', 'Warning', 'Critical'
            - needed_to_recover (int): Days to attend consecutively to reach target.
            - buffer_available (int): Days that can be missed while staying above target.
            - message (str): A human-readable status message.
    """
    if total_days == 0:
        return {
            "current_percent": 0.0,
            "status": "Good",
            "needed_to_recover": 0,
            "buffer_available": 0,
            "message": "No attendance marked yet."
        }

    current_percent = (present_count / total_days) * 100

    if current_percent < critical_percent:
        status = "Critical"
        message = f"Critical: Attendance is below {critical_percent}%!"
    elif current_percent < target_percent:
        status = "Warning"
        message = f"Warning: Attendance is below {target_percent}%."
    else:
        status = "Good"
        message = f"Above {target_percent}%."

    # (present + x) / (total + x) >= target  =>  x >= (target * total - present) / (1 - target)
    target_rate = target_percent / 100.0
    needed_to_recover = 0
    if current_percent < target_percent:
        denominator = 1.0 - target_rate
        if denominator > 0:
            needed_to_recover = math.ceil(((total_days * target_rate) - present_count) / denominator)
        else:
            needed_to_recover = 999

    # present / (total + x) >= target  =>  x <= present / target - total
    buffer_available = 0
    if current_percent > target_percent and target_rate > 0:
        buffer_available = int(present_count / target_rate - total_days)

    return {
        "current_percent": round(current_percent, 1),
        "status": status,
        "needed_to_recover": needed_to_recover,
        "buffer_available": buffer_available,
        "message": message
    }


# =============================================================================
#   Attendance Aggregation
# =============================================================================

def merge_day_sheet(students, rows, date_str):
    """
    One entry per student for a single day. Students without a stored row
    come back as 'Unmarked'.
    """
    by_student = {row['studentid']: row for row in rows}
    sheet = []
    for student in students:
        existing = by_student.get(student['studentid'])
        sheet.append({
            'studentid': student['studentid'],
            'date': date_str,
            'status': existing['status'] if existing else 'Unmarked',
            'student': {
                'studentid': student['studentid'],
                'name': student.get('name') or '',
                'fathername': student.get('fathername') or '',
                'mobilenumber': student.get('mobilenumber') or '',
            }
        })
    return sheet


def summarize_attendance(rows, students_by_id):
    """
    Group attendance rows into per-student present/absent counts.

    Args:
        rows: Attendance rows with 'studentid' and 'status'.
        students_by_id: {studentid: student row} used for names and numbers.

    Returns:
        (summaries, overall_percentage). Students whose name is unknown are
        dropped from the summaries but still count toward the overall figure.
        Summaries are sorted by name.
    """
    grouped = {}
    for row in rows:
        sid = row['studentid']
        if sid not in grouped:
            student = students_by_id.get(sid) or {}
            grouped[sid] = {
                'studentid': sid,
                'name': student.get('name') or 'Unknown',
                'fathername': student.get('fathername') or '-',
                'mobilenumber': student.get('mobilenumber') or '',
                'present': 0,
                'absent': 0,
            }
        if row['status'] == 'Present':
            grouped[sid]['present'] += 1
        elif row['status'] == 'Absent':
            grouped[sid]['absent'] += 1

    total_present = 0
    total_records = 0
    summaries = []
    for summary in grouped.values():
        total = summary['present'] + summary['absent']
        pct = (summary['present'] / total) * 100 if total > 0 else 0.0
        total_present += summary['present']
        total_records += total
        summary['percentage'] = pct
        summary['percentage_str'] = f"{pct:.1f}"
        summaries.append(summary)

    known = [s for s in summaries if s['name'] and s['name'].lower() != 'unknown']
    known.sort(key=lambda s: s['name'].lower())

    overall = (total_present / total_records) * 100 if total_records > 0 else 0.0
    return known, overall


def daily_attendance(rows):
    """Per-day present/total counts, oldest first."""
    days = {}
    for row in rows:
        day = days.setdefault(row['date'], {'date': row['date'], 'present_count': 0, 'total_students': 0})
        day['total_students'] += 1
        if row['status'] == 'Present':
            day['present_count'] += 1
    return [days[d] for d in sorted(days)]


def generate_attendance_trend_graph(days_data, target_percent=75):
    """
    Generates a base64-encoded PNG line graph of daily attendance.

    Args:
        days_data: List of dicts with 'date', 'present_count', 'total_students' keys

    Returns:
        str: Base64-encoded PNG image data URI, or None with fewer than two days
    """
    if not days_data or len(days_data) < 2:
        return None

    dates = []
    percentages = []
    for day in days_data:
        try:
            dates.append(datetime.strptime(str(day['date'])[:10], '%Y-%m-%d'))
        except (ValueError, TypeError):
            continue
        total = day.get('total_students', 0)
        percentages.append((day.get('present_count', 0) / total * 100) if total > 0 else 0)

    if len(dates) < 2:
        return None

    try:
        fig, ax = plt.subplots(figsize=(10, 4), dpi=100)
        ax.plot(dates, percentages, color='#2563eb', linewidth=2.5, marker='o', markersize=5)
        ax.fill_between(dates, percentages, alpha=0.15, color='#2563eb')
        ax.axhline(y=target_percent, color='#28a745', linestyle='--', linewidth=1.5, alpha=0.7,
                   label=f'{target_percent}% Target')

        ax.set_ylabel('Attendance %')
        ax.set_xlabel('Date')
        ax.xaxis.set_major_formatter(mdates.DateFormatter('%d %b'))
        ax.xaxis.set_major_locator(mdates.AutoDateLocator())
        fig.autofmt_xdate(rotation=45)
        ax.set_ylim(0, 105)
        ax.grid(True, alpha=0.2)
        ax.spines['top'].set_visible(False)
        ax.spines['right'].set_visible(False)
        ax.legend(loc='lower right')
        plt.tight_layout()

        buffer = io.BytesIO()
        plt.savefig(buffer, format='png')
        plt.close(fig)
        buffer.seek(0)
        return f"data:image/png;base64,{base64.b64encode(buffer.read()).decode('utf-8')}"

    except (ValueError, RuntimeError) as e:
        logger.error(f"Error generating trend graph: {e}")
        return None


def get_at_risk_students(summaries, threshold=75.0, critical=60.0):
    """
    Students from an attendance report whose percentage is below the threshold,
    lowest first, with the days needed to get back to the threshold.
    """
    at_risk = []
    target_rate = threshold / 100.0
    for summary in summaries:
        total = summary['present'] + summary['absent']
        if total == 0:
            continue
        pct = summary['present'] / total * 100
        if pct >= threshold:
            continue
        if target_rate < 1.0:
            days_needed = math.ceil((total * target_rate - summary['present']) / (1.0 - target_rate))
        else:
            days_needed = 999
        at_risk.append({
            'studentid': summary['studentid'],
            'name': summary['name'],
            'attendance_percent': round(pct, 1),
            'present': summary['present'],
            'total_days': total,
            'days_needed': days_needed,
            'status': 'Critical' if pct < critical else 'Warning'
        })
    at_risk.sort(key=lambda x: x['attendance_percent'])
    return at_risk


# =============================================================================
#   Marks & Results
# =============================================================================

def grade_from_percent(percent):
    if percent >= 90:
        return "A+"
    if percent >= 80:
        return "A"
    if percent >= 70:
        return "B"
    if percent >= 60:
        return "C"
    if percent >= 50:
        return "D"
    if percent >= 33:
        return "E"
    return "F"


def parse_total_marks(value):
    """Total marks must be a finite number >= 0; returns None otherwise."""
    try:
        total = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(total) or total < 0:
        return None
    return total


def clamp_obtained(value, total):
    """Obtained marks clamped to [0, total]; anything non-numeric becomes 0."""
    try:
        obtained = float(value)
    except (TypeError, ValueError):
        obtained = 0.0
    if not math.isfinite(obtained) or obtained < 0:
        obtained = 0.0
    if total is not None and obtained > total:
        obtained = total
    return obtained


def build_class_results(marks, tests_by_id, students_by_id):
    """
    Group marks into one result card per student.

    Each card lists the tests with percentage and grade, plus overall
    totals, percentage and grade.
    """
    cards = {}
    for mark in marks:
        test = tests_by_id.get(mark['test_id'])
        if test is None:
            continue
        sid = mark['studentid']
        if sid not in cards:
            student = students_by_id.get(sid) or {}
            cards[sid] = {
                'studentid': sid,
                'name': student.get('name') or '-',
                'fathername': student.get('fathername') or '-',
                'tests': [],
            }
        total = mark['total_marks'] or 0
        obtained = mark['obtained_marks'] or 0
        percent = (obtained / total) * 100 if total > 0 else 0.0
        cards[sid]['tests'].append({
            'test_id': mark['test_id'],
            'test_name': test.get('test_name') or '-',
            'subject': test.get('subject') or '-',
            'date': test.get('date') or '-',
            'total': total,
            'obtained': obtained,
            'percent': round(percent, 2),
            'grade': grade_from_percent(percent),
        })

    for card in cards.values():
        card['tests'].sort(key=lambda t: (t['date'], t['test_id']))
        total_max = sum(t['total'] for t in card['tests'])
        total_obtained = sum(t['obtained'] for t in card['tests'])
        overall = (total_obtained / total_max) * 100 if total_max > 0 else 0.0
        card['total_max'] = total_max
        card['total_obtained'] = total_obtained
        card['overall_percent'] = round(overall, 2)
        card['overall_grade'] = grade_from_percent(overall)

    return sorted(cards.values(), key=lambda c: c['name'].lower())
