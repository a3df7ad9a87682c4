"""
UTILITIES PACKAGE
=================

Helpers used by the services (no HTTP, no business logic):

  retry - with_retry(fn): awaits fn(); on failure retries with exponential backoff (x1.5).
          is_rate_limit_error / is_not_found_error classify OpenAI errors.
"""
