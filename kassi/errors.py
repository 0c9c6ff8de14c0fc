"""Error types raised by the storage layer and the job queue."""

from __future__ import annotations


class DbError(Exception):
    """Base class for database failures."""

    template = "{}"

    def __init__(self, detail: object) -> None:
        self.detail = str(detail)
        super().__init__(self.template.format(self.detail))


class PoolError(DbError):
    """A connection could not be obtained from the pool."""

    template = "pool error: {}"


class QueryError(DbError):
    """A statement failed to execute."""

    template = "query error: {}"


class RecordNotFound(QueryError):
    """A query that must return a row returned none."""

    def __init__(self, detail: object = "Record not found") -> None:
        super().__init__(detail)


class JobError(Exception):
    """Base class for job queue failures."""

    template = "{}"

    def __init__(self, detail: object) -> None:
        self.detail = str(detail)
        super().__init__(self.template.format(self.detail))


class JobDatabaseError(JobError):
    """A job queue statement failed."""

    template = "database error: {}"


class JobPoolError(JobError):
    """The job queue could not obtain a connection."""

    template = "pool error: {}"


class SerializationError(JobError):
    """A job payload could not be encoded or decoded."""

    template = "serialization error: {}"


class HandlerError(JobError):
    """A job handler reported a failure."""

    template = "handler error: {}"