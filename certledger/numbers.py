import secrets
import time

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def to_base36(value):
    if value < 0:
        raise ValueError("negative values have no base36 form here")
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_certificate_number(now_ms=None, random_bytes=None):
    """Return ``CERT-<base36 ms timestamp>-<6 hex chars>``, upper-cased.

    Not guaranteed unique; the registry's unique constraint is the arbiter.
    """
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    if random_bytes is None:
        random_bytes = secrets.token_bytes(3)
    return f"CERT-{to_base36(now_ms).upper()}-{random_bytes.hex().upper()}"
