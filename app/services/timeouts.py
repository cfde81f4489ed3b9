"""Explicit timeouts for outbound calls.

Every external call carries a socket timeout of EXTERNAL_CALL_TIMEOUT
seconds: ``requests`` calls pass ``timeout=`` directly, and the Stripe SDK
is given a ``stripe.RequestsClient(timeout=...)`` (see stripe_service).
Either way the caller sees ExternalCallTimeout, a recoverable failure that
marks the webhook event failed so the processor redelivers it.
"""


class ExternalCallTimeout(Exception):
    """An external call did not finish in time. Recoverable: retry later."""
