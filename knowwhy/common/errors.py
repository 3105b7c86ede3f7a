"""
Error taxonomy shared by all KnowWhy components.

Transport failures are retryable. Everything else is handled where it occurs:
parse problems by lenient parsing or repair, schema problems by the repair
loop, lifecycle misuse by the caller.
"""


class KnowWhyError(Exception):
    """Base class for KnowWhy errors"""


class TransportError(KnowWhyError):
    """A collaborator (model, search, store) call failed in transit"""


class CallTimeoutError(TransportError):
    """A guarded collaborator call exceeded its timeout"""


class LLMUnavailableError(KnowWhyError, RuntimeError):
    """No language model is configured"""


class InvalidTransitionError(KnowWhyError, ValueError):
    """Illegal brief status change"""

    def __init__(self, brief_id: str, current: str, target: str):
        self.brief_id = brief_id
        self.current = current
        self.target = target
        super().__init__(f"Brief {brief_id}: cannot move from {current} to {target}")
