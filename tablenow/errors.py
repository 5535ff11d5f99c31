"""Error taxonomy shared by the reservation engine and its collaborators."""

from enum import Enum


class ErrorKind(str, Enum):
    """Failure categories reported in structured results."""

    NOT_FOUND = "not_found"
    VALIDATION_FAILURE = "validation_failure"
    COLLABORATOR_FAILURE = "collaborator_failure"
    TRANSPORT_DEGRADED = "transport_degraded"


class TableNowError(Exception):
    """Base class for all TableNow errors."""

    kind: ErrorKind = ErrorKind.COLLABORATOR_FAILURE


class ValidationFailure(TableNowError):
    """Tool arguments or booking fields are malformed or missing."""

    kind = ErrorKind.VALIDATION_FAILURE


class InvalidEmailAddress(ValidationFailure):
    """The inbound email address carries no tenant id."""


class CollaboratorFailure(TableNowError):
    """An external system (calendar, CRM, email, knowledge base) failed."""

    kind = ErrorKind.COLLABORATOR_FAILURE


class TransportDegraded(CollaboratorFailure):
    """A read-only external query failed and the caller should fall back."""

    kind = ErrorKind.TRANSPORT_DEGRADED


class CalendarError(CollaboratorFailure):
    """Google Calendar request failed."""


class CRMError(CollaboratorFailure):
    """HubSpot request failed."""


class NotificationError(CollaboratorFailure):
    """Outbound email could not be sent."""


class KnowledgeBaseError(CollaboratorFailure):
    """The question-answering backend failed."""


class StoreError(TableNowError):
    """The reservation store rejected an operation."""


class DuplicateConfirmationCode(StoreError):
    """A reservation with this confirmation code already exists."""

    kind = ErrorKind.VALIDATION_FAILURE


class TenantNotFound(TableNowError):
    """No tenant matches the identifier an inbound message carries."""

    kind = ErrorKind.NOT_FOUND
