import sqlite3
import bcrypt
import os
from dotenv import load_dotenv

# =================================================================
#   SchoolDesk Database Setup Script
#   - Creates the complete database schema.
#   - Adds a default administrator for first-time login.
#   - Uses bcrypt for password hashing.
# =================================================================

# Load environment variables
load_dotenv(os.path.join(os.path.dirname(os.path.abspath(__file__)), '.env'))


# Order matters: children before parents when dropping.
TABLES = [
    'staff_advance_payments',
    'staff_advances',
    'messages',
    'diary',
    'complaints',
    'inquiries',
    'marks',
    'tests',
    'fee_payments',
    'fee_invoice_details',
    'fee_invoices',
    'attendance',
    'students',
    'classes',
    'profiles',
]

SCHEMA = [
    # 1. Profiles: staff and admin accounts used for login, assignments and advances.
    """
    CREATE TABLE IF NOT EXISTS profiles (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        email TEXT UNIQUE NOT NULL,
        password TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'staff'
    )
    """,
    # 2. Classes
    """
    CREATE TABLE IF NOT EXISTS classes (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        description TEXT
    )
    """,
    # 3. Students: studentid is the admission number chosen by the office.
    """
    CREATE TABLE IF NOT EXISTS students (
        studentid INTEGER PRIMARY KEY,
        name TEXT NOT NULL,
        fathername TEXT,
        mobilenumber TEXT,
        dob TEXT,
        address TEXT,
        gender TEXT,
        class_id INTEGER,
        monthly_fee REAL DEFAULT 0,
        joining_date TEXT,
        status TEXT NOT NULL DEFAULT 'active',
        clear INTEGER NOT NULL DEFAULT 0,
        FOREIGN KEY (class_id) REFERENCES classes (id) ON DELETE SET NULL
    )
    """,
    # 4. Attendance: one row per student per class per day.
    """
    CREATE TABLE IF NOT EXISTS attendance (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        studentid INTEGER NOT NULL,
        class_id INTEGER NOT NULL,
        date TEXT NOT NULL,
        status TEXT NOT NULL,
        FOREIGN KEY (studentid) REFERENCES students (studentid) ON DELETE CASCADE
    )
    """,
    # 5. Fee invoices and their line items and payments.
    """
    CREATE TABLE IF NOT EXISTS fee_invoices (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        student_id INTEGER NOT NULL,
        invoice_date TEXT NOT NULL,
        due_date TEXT,
        total_amount REAL NOT NULL DEFAULT 0,
        status TEXT NOT NULL DEFAULT 'unpaid',
        notes TEXT,
        FOREIGN KEY (student_id) REFERENCES students (studentid) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS fee_invoice_details (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        invoice_id INTEGER NOT NULL,
        fee_type TEXT,
        description TEXT,
        amount REAL NOT NULL DEFAULT 0,
        FOREIGN KEY (invoice_id) REFERENCES fee_invoices (id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS fee_payments (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        invoice_id INTEGER NOT NULL,
        invoice_detail_id INTEGER,
        amount REAL NOT NULL,
        payment_method TEXT DEFAULT 'cash',
        notes TEXT,
        paid_at TEXT NOT NULL,
        FOREIGN KEY (invoice_id) REFERENCES fee_invoices (id) ON DELETE CASCADE
    )
    """,
    # 6. Tests and marks.
    """
    CREATE TABLE IF NOT EXISTS tests (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        test_name TEXT NOT NULL,
        test_type TEXT NOT NULL,
        subject TEXT NOT NULL,
        class_id INTEGER NOT NULL,
        class_name TEXT,
        date TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS marks (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        test_id INTEGER NOT NULL,
        studentid INTEGER NOT NULL,
        class_id INTEGER,
        total_marks REAL NOT NULL,
        obtained_marks REAL NOT NULL DEFAULT 0,
        UNIQUE (test_id, studentid),
        FOREIGN KEY (test_id) REFERENCES tests (id) ON DELETE CASCADE
    )
    """,
    # 7. Admission inquiries.
    """
    CREATE TABLE IF NOT EXISTS inquiries (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        fathername TEXT NOT NULL,
        mobilenumber TEXT NOT NULL,
        address TEXT,
        class TEXT,
        previous_school TEXT,
        session TEXT,
        year INTEGER,
        date TEXT,
        quoted_fee TEXT,
        status TEXT NOT NULL DEFAULT 'Inquiry',
        test_date TEXT,
        follow_up_count INTEGER NOT NULL DEFAULT 0
    )
    """,
    # 8. Complaints.
    """
    CREATE TABLE IF NOT EXISTS complaints (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        student_id INTEGER,
        parent_number TEXT,
        title TEXT NOT NULL,
        complaint_text TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'New',
        resolution_notes TEXT,
        against_user_id INTEGER,
        assigned_to_user_id INTEGER,
        created_at TEXT NOT NULL
    )
    """,
    # 9. Messages: the outbox, rows are delivered later and flagged sent.
    """
    CREATE TABLE IF NOT EXISTS messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        number TEXT,
        text TEXT NOT NULL,
        student_id INTEGER,
        class_id INTEGER,
        sent INTEGER NOT NULL DEFAULT 0,
        attempts INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        created_at TEXT NOT NULL,
        sent_at TEXT
    )
    """,
    # 10. Class diary: dated homework entries, also queued to parents.
    """
    CREATE TABLE IF NOT EXISTS diary (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        class_id INTEGER NOT NULL,
        diary TEXT NOT NULL,
        date TEXT NOT NULL,
        created_by INTEGER,
        created_at TEXT NOT NULL,
        FOREIGN KEY (class_id) REFERENCES classes (id) ON DELETE CASCADE
    )
    """,
    # 11. Staff salary advances and their repayments.
    """
    CREATE TABLE IF NOT EXISTS staff_advances (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        staff_id INTEGER NOT NULL,
        amount REAL NOT NULL,
        reason TEXT,
        status TEXT NOT NULL DEFAULT 'pending',
        approved_at TEXT,
        approved_by INTEGER,
        created_at TEXT NOT NULL,
        FOREIGN KEY (staff_id) REFERENCES profiles (id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS staff_advance_payments (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        advance_id INTEGER NOT NULL,
        amount REAL NOT NULL,
        added_by INTEGER,
        created_at TEXT NOT NULL,
        FOREIGN KEY (advance_id) REFERENCES staff_advances (id) ON DELETE CASCADE
    )
    """,
]

INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_attendance_class_date ON attendance (class_id, date)",
    "CREATE INDEX IF NOT EXISTS idx_invoices_student_date ON fee_invoices (student_id, invoice_date)",
    "CREATE INDEX IF NOT EXISTS idx_messages_sent ON messages (sent, id)",
    "CREATE INDEX IF NOT EXISTS idx_diary_class_date ON diary (class_id, date)",
]


def hash_password(password):
    """Hash a password using bcrypt."""
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')


def create_schema(connection, drop_existing=False):
    """Create every table (optionally dropping old ones first)."""
    cursor = connection.cursor()
    if drop_existing:
        for table in TABLES:
            cursor.execute(f"DROP TABLE IF EXISTS {table}")
    for statement in SCHEMA:
        cursor.execute(statement)
    for statement in INDEXES:
        cursor.execute(statement)
    connection.commit()


def create_admin(connection, email='admin', password=None):
    """Insert the default admin profile. Returns False if it already exists."""
    password = password or os.environ.get('ADMIN_DEFAULT_PASSWORD', 'admin')
    try:
        connection.execute(
            "INSERT INTO profiles (email, password, role) VALUES (?, ?, 'admin')",
            (email, hash_password(password))
        )
        connection.commit()
        return True
    except sqlite3.IntegrityError:
        return False


def setup_database(db_path=None, drop_existing=True):
    """
    Connects to the database, drops old tables for a clean slate,
    creates all tables and adds a default admin user.
    """
    db_path = db_path or os.environ.get('DATABASE_PATH', 'school.db')
    connection = None

    try:
        connection = sqlite3.connect(db_path)
        connection.execute("PRAGMA foreign_keys = ON")

        print("--- Creating tables...")
        create_schema(connection, drop_existing=drop_existing)
        print(f"{len(SCHEMA)} tables ready.")

        print("\n--- Adding default admin user...")
        if create_admin(connection):
            print("Default admin user created successfully.")
            print("  Username: admin")
            print("  ⚠️  CHANGE THIS PASSWORD IMMEDIATELY after first login!")
        else:
            print("Admin user already exists.")

    except sqlite3.Error as e:
        print(f"An error occurred: {e}")
        raise
    finally:
        if connection:
            connection.close()
            print("Database connection closed.")


if __name__ == '__main__':
    print("Starting database setup...")
    setup_database()
    print("\nDatabase setup complete.")
