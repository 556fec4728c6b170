import math
from typing import Any, List, Tuple

from credvault.models.credential import CamelModel

MAX_LIMIT = 100


def clamp_pagination(page: int, limit: int) -> Tuple[int, int]:
    """`limit` se recorta a [1, 100]; `page` empieza en 1."""
    return max(1, page or 1), min(MAX_LIMIT, max(1, limit or 1))


class Page(CamelModel):
    items: List[Any]
    total_items: int
    total_pages: int
    page: int
    limit: int

    @classmethod
    def build(cls, items: List[Any], total_items: int, page: int, limit: int) -> "Page":
        return cls(
            items=items,
            total_items=total_items,
            total_pages=math.ceil(total_items / limit) if total_items else 0,
            page=page,
            limit=limit,
        )
