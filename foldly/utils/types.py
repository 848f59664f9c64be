from enum import StrEnum


class SubscriptionTier(StrEnum):
    FREE = "free"
    PRO = "pro"
    BUSINESS = "business"


class LinkType(StrEnum):
    BASE = "base"
    CUSTOM = "custom"
    GENERATED = "generated"


class BatchStatus(StrEnum):
    UPLOADING = "uploading"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ProcessingStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class NotificationType(StrEnum):
    UPLOAD = "upload"
