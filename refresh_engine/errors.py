"""
Market Brain — Refresh Error Taxonomy
───────────────────────────────────────
Every failure the refresh pipeline can raise carries a category and a
retryable flag. Workers hand both to QueueStore.fail_job; the API turns
them into a generic message plus the category, never the detail.

  category          retryable   outcome
  config            no          5xx, job failed
  validation        no          job failed, operator updates schema
  stale_data        yes         job failed, no write, retried after a delay
  quota_exceeded    yes         job failed, retried after the UTC day boundary
  transient         yes         exponential backoff up to MAX_ATTEMPTS
  upstream          no          provider 4xx (not 429), job failed
  unauthorized      no          401, no job created
  bad_request       no          400, no job created
"""

from typing import Optional


class RefreshError(Exception):
    category:  str  = "internal"
    retryable: bool = False
    public_message: str = "Internal server error"


class ConfigError(RefreshError):
    """Required credentials or settings are missing."""
    category = "config"
    public_message = "Server configuration error"


class ValidationError(RefreshError):
    """Provider response does not match the expected schema (schema drift)."""
    category = "validation"
    public_message = "Upstream data failed validation"


class StalenessViolation(RefreshError):
    """Provider returned 200 OK but its source timestamp is not newer than ours."""
    category  = "stale_data"
    retryable = True
    public_message = "Upstream data is not newer than stored data"

    def __init__(self, message: str, new_ts: Optional[float] = None, stored_ts: Optional[float] = None):
        super().__init__(message)
        self.new_ts    = new_ts
        self.stored_ts = stored_ts


class QuotaExceeded(RefreshError):
    """Daily provider quota reached; nothing is fetched until the next UTC day."""
    category  = "quota_exceeded"
    retryable = True
    public_message = "Daily data quota exceeded"


class TransientNetworkError(RefreshError):
    """Timeouts, connection errors, 5xx and 429 from the provider."""
    category  = "transient"
    retryable = True
    public_message = "Upstream temporarily unavailable"


class Unauthorized(RefreshError):
    category = "unauthorized"
    public_message = "Unauthorized"


class RegistryNotFound(RefreshError, KeyError):
    category = "not_found"
    public_message = "Unknown data type"


class JobNotFound(RefreshError, KeyError):
    category = "not_found"
    public_message = "Unknown job"


class InvalidTransition(RefreshError):
    """A complete/fail call for a job that is not processing."""
    category = "conflict"
    public_message = "Job is not in a state that allows this transition"


class UpstreamError(RefreshError):
    """Provider rejected the request (4xx other than 429); retrying will not help."""
    category = "upstream"
    public_message = "Upstream rejected the request"


class BadRequest(RefreshError):
    """Malformed request body or unknown data type from an API caller."""
    category = "bad_request"
    public_message = "Malformed request"
