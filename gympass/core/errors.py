from __future__ import annotations


class GymPassError(Exception):
    """Base error for GymPass."""


class DomainError(GymPassError):
    """Expected, user-actionable failure carrying a stable error code."""

    code = "BAD_REQUEST"
    status_code = 400
    default_message = "Request failed"

    def __init__(self, message: str | None = None, **details: object) -> None:
        self.message = message or self.default_message
        self.details = {key: value for key, value in details.items() if value is not None}
        super().__init__(self.message)


class TenantNotFoundError(DomainError):
    code = "TENANT_NOT_FOUND"
    status_code = 404
    default_message = "Gym not found"


class TenantPendingError(DomainError):
    code = "TENANT_PENDING"
    status_code = 403
    default_message = "This gym is pending payment"


class TenantBlockedError(DomainError):
    code = "TENANT_BLOCKED"
    status_code = 403
    default_message = "This gym has been blocked by the platform administrator"


class TenantDeletedError(DomainError):
    code = "TENANT_DELETED"
    status_code = 404
    default_message = "This gym is no longer available"


class TenantStateConflictError(DomainError):
    code = "TENANT_STATE_CONFLICT"
    status_code = 409
    default_message = "Gym status does not allow this change"


class InvalidSlugError(DomainError):
    code = "INVALID_SLUG"
    status_code = 400
    default_message = "Slug must be 3-30 characters of lowercase letters, numbers and hyphens"


class SlugTakenError(DomainError):
    code = "SLUG_TAKEN"
    status_code = 409
    default_message = "Slug is already taken"


class SlugReservedError(DomainError):
    code = "SLUG_RESERVED"
    status_code = 409
    default_message = "Slug is currently reserved, try again later or choose another"


class NotFoundError(DomainError):
    code = "NOT_FOUND"
    status_code = 404
    default_message = "Not found"


class ReservationExpiredError(DomainError):
    code = "RESERVATION_EXPIRED"
    status_code = 410
    default_message = "Registration session has expired"


class AccountBlockedError(DomainError):
    code = "ACCOUNT_BLOCKED"
    status_code = 403
    default_message = "Account is blocked"


class InsufficientEntriesError(DomainError):
    code = "INSUFFICIENT_ENTRIES"
    status_code = 409
    default_message = "Insufficient entries remaining"


class NotEntryBasedError(DomainError):
    code = "NOT_ENTRY_BASED"
    status_code = 400
    default_message = "This pass does not use entries"


class PassNotActiveError(DomainError):
    code = "PASS_NOT_ACTIVE"
    status_code = 409
    default_message = "Pass is not active"


class CheckoutUnavailableError(DomainError):
    code = "CHECKOUT_UNAVAILABLE"
    status_code = 503
    default_message = "Payment processing is not available"


class WebhookSignatureError(DomainError):
    code = "WEBHOOK_SIGNATURE_INVALID"
    status_code = 400
    default_message = "Webhook signature verification failed"


class InfrastructureError(GymPassError):
    """Infrastructure failure; the only class eligible for transparent retry."""


class StorageUnavailableError(InfrastructureError):
    """Tenant or registry storage is unreachable or corrupt."""

    def __init__(self, message: str, *, slug: str | None = None) -> None:
        super().__init__(message)
        self.slug = slug


class CheckoutProviderError(InfrastructureError):
    """Payment provider call failed."""
