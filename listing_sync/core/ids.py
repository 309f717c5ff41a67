import uuid
from collections.abc import Callable


def gen_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def id_factory(prefix: str) -> Callable[[], str]:
    """Column default producing `<prefix>_<hex>` ids (local ids never reuse upstream ids)."""
    if not prefix.isalpha():
        raise ValueError(f"id prefix must be alphabetic: {prefix!r}")
    return lambda: gen_id(prefix)
