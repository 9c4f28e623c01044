from typing import Optional, Tuple

from errors import InvalidPayload
from models import UserOut

allowed_sorts = ["price", "name", "stock", "created_at"]


def page_count(total: int, limit: int = 10) -> int:
    return max((total + limit - 1) // limit, 1)


def parse_sort(sort: Optional[str], default: str = "created_at") -> Tuple[str, int]:
    """Turn 'price' / '-price' into (field, direction)."""
    if not sort or not sort.strip():
        return default, 1
    sort = sort.strip()
    if sort.startswith("-"):
        field, order = sort[1:] or default, -1
    else:
        field, order = sort, 1
    if field not in allowed_sorts:
        raise InvalidPayload(f"Invalid sort field '{field}'. Allowed: {allowed_sorts}")
    return field, order


def public_user(user: dict) -> dict:
    """User projection safe to return to clients (no hash, no tokens)."""
    return UserOut(**{k: v for k, v in user.items() if k in UserOut.model_fields}).model_dump()
