"""
Error taxonomy for the chat pipeline.

Every failure of an outbound dependency (embedding provider, document store,
completion provider) is an ``UpstreamUnavailable``. Views turn these into a
single JSON error response as long as nothing has been streamed yet.
"""


class UpstreamUnavailable(Exception):
    """An upstream service failed or timed out."""

    code = 'UPSTREAM_UNAVAILABLE'
    status = 503


class DeadlineExceeded(UpstreamUnavailable):
    """The request ran out of time before output started."""

    code = 'DEADLINE_EXCEEDED'
    status = 504
