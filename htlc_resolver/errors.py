"""
Exception taxonomy for the swap engine.

Everything the engine raises derives from SwapError so callers (CLI,
health server, tests) can catch one type. Timeouts are deliberately
absent: an expired timelock is a normal path that ends in `expired` or
`refunded`, not an exception.
"""


class SwapError(Exception):
    """Base class for all swap engine errors."""

    retryable = False

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.__class__.__name__)
        self.context = context

    def to_dict(self) -> dict:
        return {
            "type": self.__class__.__name__,
            "message": str(self),
            "retryable": self.retryable,
            **{k: str(v) for k, v in self.context.items()},
        }


class ValidationError(SwapError):
    """Malformed parameters, rejected before any state is created."""


class NotProfitable(SwapError):
    """The profitability policy rejected the order."""


class ProfitabilityRejected(NotProfitable):
    """The profitability policy rejected a specific fill."""


class SecretReused(SwapError):
    """A secret (or Merkle leaf) was already consumed."""


class SecretMismatch(SwapError):
    """A presented secret does not hash to the committed hashlock."""


class InsufficientSignatureOrAllowance(SwapError):
    """The maker's order signature or token allowance is not valid."""


class InsufficientFunds(SwapError):
    """No set of spendable outputs covers amount plus fee."""

    retryable = True


class BroadcastFailed(SwapError):
    """A chain client refused or failed to broadcast a transaction."""

    retryable = True


class ChainClientError(SwapError):
    """Transient failure talking to a chain node or API."""

    retryable = True


class RetryExhausted(SwapError):
    """Bounded retries ran out; the swap needs operator intervention."""

    retryable = True


class UnknownOrder(SwapError):
    """No swap is stored under the requested order id."""


class InvalidTransition(SwapError):
    """A state transition that skips or contradicts the lifecycle."""


class ScriptMismatch(SwapError):
    """A script does not follow either HTLC template."""


class TimelockNotReached(SwapError):
    """A refund was requested before the escrow's cancellation time."""


class StaleState(SwapError):
    """Another writer stored a newer revision of the swap first."""

    retryable = True
