# =================================================================
#   SchoolDesk - Excel Exports
#   Each builder returns an in-memory .xlsx stream ready for send_file.
# =================================================================

import io

from openpyxl import Workbook
from openpyxl.styles import Font, Alignment

XLSX_MIMETYPE = 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'


def _workbook(title, headers):
    wb = Workbook()
    ws = wb.active
    ws.title = title
    ws.append(headers)
    for cell in ws[1]:
        cell.font = Font(bold=True)
        cell.alignment = Alignment(horizontal='center')
    return wb, ws


def _stream(wb):
    in_memory_file = io.BytesIO()
    wb.save(in_memory_file)
    in_memory_file.seek(0)
    return in_memory_file


def attendance_report_workbook(summaries, overall_percentage, class_name='', start_date='', end_date=''):
    wb, ws = _workbook("Attendance Report", ["Name", "Father Name", "Present", "Absent", "Percentage"])
    for s in summaries:
        ws.append([s['name'], s['fathername'], s['present'], s['absent'], f"{s['percentage_str']}%"])
    ws.append([])
    ws.append([f"Class: {class_name}", f"{start_date} to {end_date}", "", "Overall", f"{overall_percentage:.1f}%"])
    ws.column_dimensions['A'].width = 28
    ws.column_dimensions['B'].width = 28
    return _stream(wb)


def defaulters_workbook(defaulters):
    headers = ["Student ID", "Name", "Father Name", "Class", "Mobile", "Current Tuition",
               "Previous Tuition", "Annual", "Stationery", "Arrears", "Total Pending",
               "Received This Month"]
    wb, ws = _workbook("Defaulters", headers)
    for d in defaulters:
        ws.append([
            d['studentid'], d['name'], d.get('fathername'), d.get('class_name'), d.get('mobilenumber'),
            d['current_tuition'], d['prev_tuition'], d['annual_charges'], d['stationery_charges'],
            d['arrears'], d['total_pending'], d['amount_received_this_month'],
        ])
    ws.append([])
    ws.append(["", "Total", "", "", "", "", "", "", "", "",
               sum(d['total_pending'] for d in defaulters),
               sum(d['amount_received_this_month'] for d in defaulters)])
    ws.column_dimensions['B'].width = 28
    ws.column_dimensions['C'].width = 28
    return _stream(wb)


def receipts_workbook(payments):
    headers = ["Receipt #", "Invoice #", "Date", "Student", "Father Name", "Fee", "Method", "Amount", "Notes"]
    wb, ws = _workbook("Receipts", headers)
    for p in payments:
        student = p.get('student') or {}
        ws.append([
            p['id'], p['invoice_id'], str(p.get('paid_at') or '')[:10], student.get('name'),
            student.get('fathername'), p.get('fee_label'), p.get('payment_method'), p['amount'], p.get('notes'),
        ])
    ws.append([])
    ws.append(["", "", "", "", "", "", "Total", sum(p['amount'] for p in payments), ""])
    ws.column_dimensions['D'].width = 28
    ws.column_dimensions['F'].width = 30
    return _stream(wb)
