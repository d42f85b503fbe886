import pytest

import analytics


@pytest.mark.parametrize('percent, grade', [
    (100, 'A+'), (90, 'A+'), (89.99, 'A'), (80, 'A'), (70, 'B'), (60, 'C'),
    (50, 'D'), (33, 'E'), (32.9, 'F'), (0, 'F'),
])
def test_grade_boundaries(percent, grade):
    assert analytics.grade_from_percent(percent) == grade


def test_status_needs_days_to_recover():
    result = analytics.calculate_status_and_improvement(6, 10, target_percent=75, critical_percent=60)

    assert result['status'] == 'Warning'
    assert result['current_percent'] == 60.0
    # (6 + 6) / (10 + 6) = 75%
    assert result['needed_to_recover'] == 6
    assert result['buffer_available'] == 0


def test_status_buffer_when_above_target():
    result = analytics.calculate_status_and_improvement(9, 10)
    assert result['status'] == 'Good'
    assert result['buffer_available'] == 2


def test_status_critical_and_empty():
    assert analytics.calculate_status_and_improvement(2, 10)['status'] == 'Critical'
    empty = analytics.calculate_status_and_improvement(0, 0)
    assert empty['current_percent'] == 0.0
    assert empty['message'] == "No attendance marked yet."


def test_merge_day_sheet_marks_missing_students_unmarked():
    students = [{'studentid': 1, 'name': 'A'}, {'studentid': 2, 'name': 'B', 'mobilenumber': '92300'}]
    rows = [{'studentid': 1, 'status': 'Present'}]

    sheet = analytics.merge_day_sheet(students, rows, '2025-03-03')

    assert [entry['status'] for entry in sheet] == ['Present', 'Unmarked']
    assert sheet[1]['student']['mobilenumber'] == '92300'
    assert sheet[1]['date'] == '2025-03-03'


def test_summarize_attendance_per_student_and_overall():
    students = {
        1: {'name': 'zara', 'fathername': 'F1', 'mobilenumber': '1'},
        2: {'name': 'Ahmed', 'fathername': None, 'mobilenumber': '2'},
    }
    rows = [
        {'studentid': 1, 'status': 'Present'},
        {'studentid': 1, 'status': 'Absent'},
        {'studentid': 2, 'status': 'Present'},
        {'studentid': 2, 'status': 'Present'},
        {'studentid': 9, 'status': 'Absent'},
    ]

    summaries, overall = analytics.summarize_attendance(rows, students)

    assert [s['name'] for s in summaries] == ['Ahmed', 'zara']
    assert summaries[0]['fathername'] == '-'
    assert summaries[0]['percentage_str'] == '100.0'
    assert summaries[1]['present'] == 1 and summaries[1]['absent'] == 1
    assert summaries[1]['percentage'] == 50.0
    # the unknown student (9) is hidden but still counted
    assert overall == pytest.approx(60.0)


def test_summarize_attendance_empty():
    assert analytics.summarize_attendance([], {}) == ([], 0.0)


def test_daily_attendance_sorted_by_day():
    rows = [
        {'date': '2025-03-04', 'status': 'Present'},
        {'date': '2025-03-03', 'status': 'Absent'},
        {'date': '2025-03-03', 'status': 'Present'},
    ]
    assert analytics.daily_attendance(rows) == [
        {'date': '2025-03-03', 'present_count': 1, 'total_students': 2},
        {'date': '2025-03-04', 'present_count': 1, 'total_students': 1},
    ]


def test_trend_graph_needs_two_days():
    one_day = [{'date': '2025-03-03', 'present_count': 3, 'total_students': 4}]
    assert analytics.generate_attendance_trend_graph(one_day) is None

    two_days = one_day + [{'date': '2025-03-04', 'present_count': 4, 'total_students': 4}]
    graph = analytics.generate_attendance_trend_graph(two_days)
    assert graph.startswith('data:image/png;base64,')


def test_at_risk_students_sorted_lowest_first():
    summaries = [
        {'studentid': 1, 'name': 'A', 'present': 7, 'absent': 3},
        {'studentid': 2, 'name': 'B', 'present': 4, 'absent': 6},
        {'studentid': 3, 'name': 'C', 'present': 9, 'absent': 1},
    ]
    at_risk = analytics.get_at_risk_students(summaries, threshold=75, critical=60)

    assert [s['studentid'] for s in at_risk] == [2, 1]
    assert at_risk[0]['status'] == 'Critical'
    assert at_risk[1]['days_needed'] == 2


@pytest.mark.parametrize('value, expected', [
    ('50', 50.0), (0, 0.0), (-1, None), ('abc', None), (None, None), (float('inf'), None),
])
def test_parse_total_marks(value, expected):
    assert analytics.parse_total_marks(value) == expected


@pytest.mark.parametrize('value, expected', [
    (40, 40.0), (75, 50.0), (-5, 0.0), ('x', 0.0), (None, 0.0),
])
def test_clamp_obtained(value, expected):
    assert analytics.clamp_obtained(value, 50) == expected


def test_build_class_results():
    tests = {
        1: {'test_name': 'Monthly Maths', 'subject': 'Maths', 'date': '2025-03-01'},
        2: {'test_name': 'Monthly English', 'subject': 'English', 'date': '2025-03-05'},
    }
    students = {10: {'name': 'Zain'}, 11: {'name': 'Amna', 'fathername': 'Tariq'}}
    marks = [
        {'test_id': 2, 'studentid': 10, 'total_marks': 50, 'obtained_marks': 20},
        {'test_id': 1, 'studentid': 10, 'total_marks': 50, 'obtained_marks': 50},
        {'test_id': 1, 'studentid': 11, 'total_marks': 0, 'obtained_marks': 0},
        {'test_id': 99, 'studentid': 11, 'total_marks': 10, 'obtained_marks': 10},
    ]

    results = analytics.build_class_results(marks, tests, students)

    assert [r['name'] for r in results] == ['Amna', 'Zain']
    amna, zain = results
    assert amna['overall_percent'] == 0.0 and amna['overall_grade'] == 'F'
    assert len(amna['tests']) == 1
    assert [t['test_id'] for t in zain['tests']] == [1, 2]
    assert zain['tests'][0]['grade'] == 'A+'
    assert zain['total_obtained'] == 70 and zain['total_max'] == 100
    assert zain['overall_grade'] == 'B'
