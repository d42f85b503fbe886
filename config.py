
# =================================================================
#   SchoolDesk - Application Configuration
#   Loads settings from environment variables (.env file)
# =================================================================

import os
import secrets
from dotenv import load_dotenv

# Load .env file from the same directory as this file
load_dotenv(os.path.join(os.path.dirname(os.path.abspath(__file__)), '.env'))


def _get_or_generate_secret_key():
    """
    Gets SECRET_KEY from environment, or auto-generates one on first run.
    If auto-generated, writes it back to the .env file so it persists.
    """
    key = os.environ.get('SECRET_KEY', '')

    if not key or key == 'auto_generate_on_first_run':
        key = secrets.token_hex(32)

        env_path = os.path.join(os.path.dirname(os.path.abspath(__file__)), '.env')
        try:
            if os.path.exists(env_path):
                with open(env_path, 'r') as f:
                    content = f.read()
                if 'SECRET_KEY=auto_generate_on_first_run' in content:
                    content = content.replace('SECRET_KEY=auto_generate_on_first_run', f'SECRET_KEY={key}')
                else:
                    content = content.rstrip('\n') + f'\nSECRET_KEY={key}\n'
                with open(env_path, 'w') as f:
                    f.write(content)
                print("[CONFIG] Auto-generated SECRET_KEY and saved to .env")
            else:
                with open(env_path, 'w') as f:
                    f.write(f'SECRET_KEY={key}\n')
                print("[CONFIG] Created .env with auto-generated SECRET_KEY")
        except OSError as e:
            print(f"[CONFIG] Warning: Could not save SECRET_KEY to .env: {e}")
            print("[CONFIG] The key will be regenerated on next restart!")

    return key


# =================================================================
#   Configuration Classes
# =================================================================

class BaseConfig:
    """Base configuration shared by all environments."""

    # Security
    SECRET_KEY = _get_or_generate_secret_key()
    TOKEN_HOURS = 8

    # Database
    DATABASE_PATH = os.environ.get('DATABASE_PATH', 'school.db')

    # The hosted backend caps every request at this many rows
    MAX_ROWS_PER_REQUEST = int(os.environ.get('MAX_ROWS_PER_REQUEST', 1000))
    FETCH_PAGE_SIZE = 1000
    IN_FILTER_CHUNK_SIZE = 150
    INSERT_CHUNK_SIZE = 500
    LIST_PAGE_SIZE = 50

    # Admin
    ADMIN_DEFAULT_PASSWORD = os.environ.get('ADMIN_DEFAULT_PASSWORD', 'admin')

    # Server
    HOST = os.environ.get('HOST', '0.0.0.0')
    PORT = int(os.environ.get('PORT', 5000))
    LOG_FILE = os.environ.get('LOG_FILE', 'schooldesk_server.log')

    # ===== SCHOOL =====
    SCHOOL_NAME = os.environ.get('SCHOOL_NAME', 'Dar-e-Arqam School')
    SCHOOL_PHONE = os.environ.get('SCHOOL_PHONE', '0323-4447292')
    ADMISSION_SYLLABUS_URL = os.environ.get('ADMISSION_SYLLABUS_URL', 'https://darearqam.vercel.app/admission')
    ADMIN_NOTIFY_NUMBER = os.environ.get('ADMIN_NOTIFY_NUMBER', '923085333392')
    UTC_OFFSET_HOURS = int(os.environ.get('UTC_OFFSET_HOURS', 5))  # GMT+5

    # ===== ATTENDANCE REQUIREMENTS =====
    MINIMUM_ATTENDANCE_PERCENTAGE = 75   # School minimum requirement (%)
    ATTENDANCE_WARNING_THRESHOLD = 60    # Critical warning threshold (%)

    # Rate Limiting
    RATE_LIMIT_LOGIN = "5 per minute"    # Max login attempts per IP
    RATE_LIMIT_API = "200 per minute"    # Max API calls per IP
    RATELIMIT_ENABLED = True

    # --- Outbox Delivery ---
    # Gateway that actually delivers WhatsApp messages; empty = queue only
    MESSAGE_GATEWAY_URL = os.environ.get('MESSAGE_GATEWAY_URL', '')
    MESSAGE_GATEWAY_TOKEN = os.environ.get('MESSAGE_GATEWAY_TOKEN', '')
    OUTBOX_INTERVAL_SECONDS = int(os.environ.get('OUTBOX_INTERVAL_SECONDS', '60'))
    OUTBOX_BATCH_SIZE = int(os.environ.get('OUTBOX_BATCH_SIZE', '50'))
    OUTBOX_MAX_ATTEMPTS = int(os.environ.get('OUTBOX_MAX_ATTEMPTS', '5'))
    START_SCHEDULER = True


class DevelopmentConfig(BaseConfig):
    """Development environment configuration."""
    DEBUG = True
    TESTING = False


class ProductionConfig(BaseConfig):
    """Production environment configuration."""
    DEBUG = False
    TESTING = False


class TestingConfig(BaseConfig):
    """Testing environment configuration."""
    DEBUG = True
    TESTING = True
    DATABASE_PATH = os.environ.get('DATABASE_PATH', 'test_school.db')
    RATELIMIT_ENABLED = False
    START_SCHEDULER = False


# --- Select configuration based on FLASK_ENV ---
_env = os.environ.get('FLASK_ENV', 'development').lower()
_config_map = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig
}

Config = _config_map.get(_env, DevelopmentConfig)

MINIMUM_ATTENDANCE_PERCENTAGE = Config.MINIMUM_ATTENDANCE_PERCENTAGE
ATTENDANCE_WARNING_THRESHOLD = Config.ATTENDANCE_WARNING_THRESHOLD
