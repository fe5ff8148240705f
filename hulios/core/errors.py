import enum


class Outcome(enum.Enum):
    """Result of a single leaf step.

    Best-effort steps only ever report SUCCESS or FAILED_NONFATAL; a step run
    in fatal mode reports FAILED_FATAL and the caller is expected to raise.
    """
    SUCCESS = "success"
    FAILED_NONFATAL = "failed-nonfatal"
    FAILED_FATAL = "failed-fatal"

    @property
    def ok(self):
        return self is Outcome.SUCCESS

    @staticmethod
    def combine(outcomes):
        """Fold a sequence of outcomes into the worst one."""
        worst = Outcome.SUCCESS
        for outcome in outcomes:
            if outcome is Outcome.FAILED_FATAL:
                return outcome
            if outcome is Outcome.FAILED_NONFATAL:
                worst = outcome
        return worst


class HuliosError(Exception):
    """Base class for failures that abort a transition."""


class PrivilegeError(HuliosError):
    pass


class RelayStartError(HuliosError):
    pass


class ConfigWriteError(HuliosError):
    pass


class CommandError(HuliosError):
    pass


class TransitionInProgressError(HuliosError):
    pass
