"""Firebase Admin app used for appointment push notifications.

Only Cloud Messaging is used. Without an initialized app every
notification is still recorded, its delivery just fails.
"""

import json
from pathlib import Path

import firebase_admin
import structlog
from firebase_admin import credentials

logger = structlog.get_logger(__name__)

_firebase_app: firebase_admin.App | None = None


def _load_credentials(
    credentials_path: str | None,
    config_json: str | None,
) -> credentials.Base | None:
    if config_json:
        return credentials.Certificate(json.loads(config_json))

    if credentials_path:
        path = Path(credentials_path)
        if not path.is_file():
            raise FileNotFoundError(f"Firebase credentials file not found: {path}")
        return credentials.Certificate(str(path))

    return None


def initialize_firebase(
    credentials_path: str | None = None,
    config_json: str | None = None,
    http_timeout: float | None = None,
) -> firebase_admin.App:
    """
    Initialize the Firebase app once per process.

    Args:
        credentials_path: Path to a service account JSON file
        config_json: Raw service account JSON, takes precedence over the file
        http_timeout: Seconds before an FCM HTTP call is abandoned

    Falls back to the default application credentials when neither is set.

    Raises:
        FileNotFoundError: If the credentials file does not exist
        ValueError: If the credentials are malformed
    """
    global _firebase_app

    if _firebase_app is None:
        cred = _load_credentials(credentials_path, config_json)
        options = {"httpTimeout": http_timeout} if http_timeout else None
        _firebase_app = firebase_admin.initialize_app(cred, options)
        logger.debug(
            "firebase_credentials_loaded",
            source="json" if config_json else "file" if credentials_path else "default",
        )

    return _firebase_app


def is_firebase_initialized() -> bool:
    """Check if push delivery is available."""
    return _firebase_app is not None


def close_firebase() -> None:
    """Release the Firebase app on shutdown."""
    global _firebase_app

    if _firebase_app is not None:
        firebase_admin.delete_app(_firebase_app)
        _firebase_app = None
