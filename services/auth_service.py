"""
Authentication: hashed platform API keys and operator signed messages.
"""
import hashlib
import re
import secrets
import time
import logging
from datetime import timedelta
from functools import wraps
from flask import request, jsonify, g, current_app
from sqlalchemy.exc import IntegrityError
from models import OperatorNonce, Platform, PlatformStatus, db, utcnow

logger = logging.getLogger('gigledger.auth')

NONCE_PATTERN = re.compile(r'^[A-Za-z0-9_-]{8,64}$')


def generate_api_key() -> tuple:
    """Generate a new API key. Returns (raw_key, key_hash)."""
    raw_key = secrets.token_urlsafe(32)
    key_hash = hashlib.sha256(raw_key.encode()).hexdigest()
    return raw_key, key_hash


def verify_api_key(raw_key: str) -> Platform:
    """Verify an API key and return the associated active Platform, or None."""
    key_hash = hashlib.sha256(raw_key.encode()).hexdigest()
    return Platform.query.filter_by(api_key_hash=key_hash, status=PlatformStatus.ACTIVE).first()


def require_platform(f):
    """Decorator: require a valid platform API key in the Authorization header.

    Sets g.platform_id on success.
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        auth_header = request.headers.get('Authorization', '')
        if not auth_header.startswith('Bearer '):
            return jsonify({"error": "unauthorized", "message": "Missing or invalid Authorization header"}), 401

        token = auth_header[7:]  # strip "Bearer "
        platform = verify_api_key(token)
        if not platform:
            return jsonify({"error": "unauthorized", "message": "Invalid API key"}), 401

        g.platform_id = platform.id
        return f(*args, **kwargs)
    return decorated


def verify_operator_signature(signature_hex, timestamp, path, nonce):
    """Verify an operator signature against OPERATOR_ADDRESS and spend its nonce.

    The signed message is: GIGLEDGER:{path}:{timestamp}:{nonce}
    The timestamp bounds how long a signature is valid; the nonce makes it
    single-use, so a captured request cannot be replayed inside that window.
    Returns (is_valid, error_message).
    """
    from eth_account import Account
    from eth_account.messages import encode_defunct

    operator_addr = current_app.config.get('OPERATOR_ADDRESS')
    if not operator_addr:
        logger.error("OPERATOR_ADDRESS not configured")
        return False, "Operator verification not configured"

    # Anti-replay: check timestamp freshness
    try:
        ts = int(timestamp)
    except (ValueError, TypeError):
        return False, "Invalid timestamp"

    drift = time.time() - ts
    if drift < -30:  # Allow 30s clock skew
        return False, "Timestamp is in the future"
    max_age = current_app.config.get('OPERATOR_SIGNATURE_MAX_AGE', 300)
    if drift > max_age:
        return False, f"Signature expired ({int(drift)}s > {max_age}s)"

    if not NONCE_PATTERN.match(nonce or ''):
        return False, "Invalid nonce"

    message_text = f"GIGLEDGER:{path}:{timestamp}:{nonce}"
    try:
        message = encode_defunct(text=message_text)
        recovered = Account.recover_message(message, signature=signature_hex)
    except (ValueError, TypeError) as e:
        logger.warning("Operator signature recovery failed: %s", e)
        return False, "Invalid signature format"

    if recovered.lower() != operator_addr.lower():
        logger.warning("Operator signature mismatch: recovered=%s expected=%s", recovered, operator_addr)
        return False, "Signature does not match operator"

    if not _spend_nonce(nonce, path, max_age):
        logger.warning("Operator nonce replayed: %s on %s", nonce, path)
        return False, "Signature already used"

    return True, None


def _spend_nonce(nonce, path, max_age):
    """Record the nonce. False if it was already used."""
    # Nonces older than any acceptable timestamp can never be replayed
    cutoff = utcnow() - timedelta(seconds=max_age + 60)
    try:
        OperatorNonce.query.filter(OperatorNonce.used_at < cutoff).delete(synchronize_session=False)
        db.session.add(OperatorNonce(nonce=nonce, path=path))
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return False
    return True


def require_operator(f):
    """Decorator: require a valid, unused operator signature.

    Expects headers:
      X-Operator-Signature: <hex signature>
      X-Operator-Timestamp: <unix timestamp>
      X-Operator-Nonce: <8-64 chars of [A-Za-z0-9_-], unique per request>

    Sets g.operator_id to the operator address.
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        signature = request.headers.get('X-Operator-Signature')
        timestamp = request.headers.get('X-Operator-Timestamp')
        nonce = request.headers.get('X-Operator-Nonce')

        if not signature or not timestamp or not nonce:
            return jsonify({"error": "unauthorized", "message": "Operator signature required"}), 401

        valid, error = verify_operator_signature(signature, timestamp, request.path, nonce)
        if not valid:
            return jsonify({"error": "forbidden", "message": error}), 403

        g.operator_id = current_app.config['OPERATOR_ADDRESS'].lower()
        return f(*args, **kwargs)
    return decorated
