"""Service error hierarchy for the video generation subsystem.

This module defines the exception hierarchy for service-level errors:
- ServiceError: Base for all service errors
- TransientError: Retryable errors (network, rate limits, timeouts, 5xx)
- PermanentError: Non-retryable errors (authentication, validation, 4xx)

User-facing errors carry a `user_message` that is safe to show in the UI.
Provider payloads and retry counts stay in the exception text and logs.
"""


class ServiceError(Exception):
    """Base exception for all service errors."""

    user_message = "Something went wrong. Please try again later."


class TransientError(ServiceError):
    """Transient error that may succeed on retry.

    Examples:
    - Network timeouts
    - Rate limit exceeded (429)
    - Service unavailable (5xx)
    """

    pass


class PermanentError(ServiceError):
    """Permanent error that will not succeed on retry.

    Examples:
    - Authentication failures (401, 403)
    - Invalid request parameters (400, 415, 422)
    - Configuration errors
    """

    pass


# Credit ledger errors
class LedgerError(ServiceError):
    """Base exception for credit ledger errors."""

    pass


class InsufficientBalance(LedgerError):
    """Debit would take the owner's balance below zero."""

    user_message = "Insufficient video credits. Purchase credits or use a redeem code."

    def __init__(self, owner_id: str, balance: int, requested: int):
        super().__init__(
            f"Owner {owner_id} has {balance} credit(s), {requested} requested"
        )
        self.owner_id = owner_id
        self.balance = balance
        self.requested = requested


# Redeem code errors
class RedeemCodeError(LedgerError):
    """Base exception for redeem code validation failures."""

    user_message = "This code cannot be redeemed."


class InvalidCode(RedeemCodeError):
    """Blank or malformed code."""

    user_message = "Please enter a valid redeem code."


class CodeNotFound(RedeemCodeError):
    """No redeem code with this value exists."""

    user_message = "This redeem code does not exist."


class CodeInactive(RedeemCodeError):
    """Code has been deactivated."""

    user_message = "This redeem code has been deactivated."


class CodeExpired(RedeemCodeError):
    """Code is past its expiry time."""

    user_message = "This redeem code has expired."


class CodeExhausted(RedeemCodeError):
    """Code reached its maximum number of uses."""

    user_message = "This redeem code has reached its usage limit."


class CodeAlreadyUsedByOwner(RedeemCodeError):
    """Owner already redeemed this code."""

    user_message = "You have already redeemed this code."


# Purchase errors
class PurchaseVerificationError(PermanentError):
    """Purchase verification rejected the receipt."""

    user_message = "The purchase could not be verified."


class PurchaseVerificationUnavailable(TransientError):
    """Purchase verification service could not be reached."""

    user_message = "Purchase verification is temporarily unavailable. Please try again."


# Storage / upload errors
class StorageTransientError(TransientError):
    """Object storage timeout, rate limit or 5xx."""

    pass


class StoragePermanentError(PermanentError):
    """Object storage rejected the upload (quota, auth, malformed request)."""

    pass


class UploadError(ServiceError):
    """Source image could not be moved to durable storage."""

    user_message = "Uploading your photo failed. Your credit has been refunded."


class UnsupportedFormat(UploadError, PermanentError):
    """Source image encoding is not on the allow-list."""

    user_message = "This image format is not supported. Use JPEG, PNG, WEBP or HEIC."


class SourceImageTooLarge(UploadError, PermanentError):
    """Source image exceeds the configured size limit."""

    user_message = "This image is too large."


class SourceImageMissing(UploadError, PermanentError):
    """Local source image reference does not resolve to a readable file."""

    user_message = "The selected photo could not be read."


class SourceImageForbidden(UploadError, PermanentError):
    """Source reference points outside the owner's staging directory."""

    user_message = "The selected photo is not available."


# Provider / submission errors
class ProviderTransientError(TransientError):
    """Video provider timeout, rate limit, 5xx or network failure."""

    pass


class ProviderRejectedError(PermanentError):
    """Video provider rejected the request (4xx)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class SubmissionError(ServiceError):
    """Synthesis task could not be created at the provider."""

    user_message = "The video service could not start your video. Your credit has been refunded."

    def __init__(self, message: str, retryable: bool):
        super().__init__(message)
        self.retryable = retryable


# Job errors
class JobNotFound(ServiceError):
    """No job with this id exists for the owner."""

    user_message = "Video generation not found."
