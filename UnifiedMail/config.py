import os
from dotenv import load_dotenv

load_dotenv()


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    try:
        return int(value) if value else default
    except ValueError:
        return default


class Config:
    # OAuth clients used for refresh_token grants
    GOOGLE_CLIENT_ID = os.getenv('GOOGLE_CLIENT_ID')
    GOOGLE_CLIENT_SECRET = os.getenv('GOOGLE_CLIENT_SECRET')
    MICROSOFT_CLIENT_ID = os.getenv('MICROSOFT_CLIENT_ID')
    MICROSOFT_CLIENT_SECRET = os.getenv('MICROSOFT_CLIENT_SECRET')
    MICROSOFT_SCOPE = os.getenv('MICROSOFT_SCOPE') or "openid profile email offline_access Mail.ReadWrite Mail.Send"

    EMAIL_ACCOUNTS_PATH = os.getenv('EMAIL_ACCOUNTS_PATH') # Folder holding email_accounts.json (tokens included, keep it private)

    HTTP_TIMEOUT_SECONDS = _int_env('HTTP_TIMEOUT_SECONDS', 30)
    TOKEN_REFRESH_BUFFER_SECONDS = _int_env('TOKEN_REFRESH_BUFFER_SECONDS', 300)
    DEFAULT_PAGE_SIZE = _int_env('DEFAULT_PAGE_SIZE', 20)

    # Tracing
    TRACE_LOG_FILE = os.getenv('TRACE_LOG_FILE')  # unset: events only reach the 'unifiedmail.tracer' logger
