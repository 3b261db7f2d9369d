from aidk.com.object_model import ContextObjectModel
from aidk.com.timeline import TickState, Timeline

__all__ = ["ContextObjectModel", "TickState", "Timeline"]
