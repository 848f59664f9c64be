from .base import Base
from .models import user, workspace, link, folder, batch, file, notification
from . import events

__all__ = ["Base", "user", "workspace", "link", "folder", "batch", "file", "notification", "events"]
