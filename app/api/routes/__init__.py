from . import credits, notifications, renders

__all__ = ["credits", "notifications", "renders"]
