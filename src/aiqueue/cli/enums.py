from enum import StrEnum


class EntryStatusFilter(StrEnum):
    pending = "pending"
    processing = "processing"
    complete = "complete"
    error = "error"
