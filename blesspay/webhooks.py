import hashlib
import hmac


def verify(raw_body: bytes, signature_header, shared_secret: str) -> bool:
    """Check an HMAC-SHA512 hex signature over the raw request body.

    Never raises: a missing header, an empty secret or a signature that is not
    a hex string all come back as False.
    """
    if not signature_header or not shared_secret:
        return False
    if not isinstance(signature_header, str) or not isinstance(raw_body, (bytes, bytearray)):
        return False

    signature = signature_header.strip().lower()
    try:
        bytes.fromhex(signature)
    except ValueError:
        return False

    digest = hmac.new(shared_secret.encode(), bytes(raw_body), hashlib.sha512).hexdigest()
    return hmac.compare_digest(digest, signature)


def sign(raw_body: bytes, shared_secret: str) -> str:
    return hmac.new(shared_secret.encode(), raw_body, hashlib.sha512).hexdigest()
