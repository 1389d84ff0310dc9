from .events import list_events
from .work_items import list_work_items, get_work_item

__all__ = ["list_events", "list_work_items", "get_work_item"]
