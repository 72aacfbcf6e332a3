from __future__ import annotations


class TrackerError(Exception):
    kind = "tracker_error"


class NotFoundError(TrackerError):
    kind = "not_found"


class InvalidInputError(TrackerError):
    kind = "invalid_input"


class AlreadyRecordedError(TrackerError):
    kind = "already_recorded"

    def __init__(self, dialect_code: str, sentence_id: int) -> None:
        super().__init__(
            f"sentence {sentence_id} is already recorded for dialect {dialect_code}"
        )
        self.dialect_code = dialect_code
        self.sentence_id = sentence_id


class StorageError(Exception):
    kind = "storage_failure"


class TranscodeError(Exception):
    kind = "transcode_failure"
