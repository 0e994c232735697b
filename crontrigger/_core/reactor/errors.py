"""
The controller-level errors, as seen by the reconciliation's retry policy.

Any error that is not explicitly permanent is retried with a rate-limited
re-queueing of the key (up to the configured retry ceiling). The permanent
errors are reported immediately and the key is forgotten: retrying cannot
fix a static misconfiguration until the object itself is changed.
"""


class PermanentError(Exception):
    """ A fatal reconciliation error, the retries are useless. """


class TemporaryError(Exception):
    """ A potentially recoverable error, should be retried. """


class DependencyNotFoundError(TemporaryError, LookupError):
    """ The referenced object is absent (it can appear later). """


class ResourceNotServedError(TemporaryError, LookupError):
    """ No API group/version serves the resource (it can be served later). """


class MisconfigurationError(PermanentError):
    """ The object lacks the required fields or has invalid values in them. """
