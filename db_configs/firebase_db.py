import logging
import os
from typing import Optional

import firebase_admin
from firebase_admin import credentials, firestore

logger = logging.getLogger(__name__)

_client = None


def initialize_firebase(service_account_path: Optional[str] = None):
    """Initialize Firebase Admin SDK (once per process)"""
    if firebase_admin._apps:
        logger.debug("✅ Firebase already initialized")
        return

    service_account_path = service_account_path or os.getenv("SERVICE_ACCOUNT_FILE")
    if not service_account_path:
        raise ValueError("SERVICE_ACCOUNT_FILE not set in .env file")
    if not os.path.exists(service_account_path):
        raise FileNotFoundError(f"Service account file not found at: {service_account_path}")

    logger.info("📁 Loading service account from: %s", service_account_path)
    try:
        cred = credentials.Certificate(service_account_path)
        firebase_admin.initialize_app(cred)
    except Exception:
        logger.exception("❌ Error connecting to Firebase. Check your service account path and file integrity.")
        raise
    logger.info("✅ Firebase Admin SDK initialized successfully")


def get_firestore_client(service_account_path: Optional[str] = None):
    """Firestore client, initialized on first use rather than on import."""
    global _client
    if _client is None:
        initialize_firebase(service_account_path)
        _client = firestore.client()
    return _client
