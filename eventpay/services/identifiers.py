import re
import secrets

UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)
LEGACY_ID_PATTERN = re.compile(r"^\d+$")


def is_uuid(value: str) -> bool:
    return bool(UUID_PATTERN.match(value))


def is_legacy_id(value: str) -> bool:
    return bool(LEGACY_ID_PATTERN.match(value))


def generate_confirmation_code() -> str:
    """Human-presentable, per-seat code, e.g. TKT-9F2C81D04A."""
    return f"TKT-{secrets.token_hex(5).upper()}"


def generate_webhook_id() -> str:
    return f"wh_{secrets.token_hex(6)}"
