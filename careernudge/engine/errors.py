"""Exception types raised by the nudge engine."""


class NudgeEngineError(Exception):
    """Base class for nudge engine errors."""


class RuleEvaluationError(NudgeEngineError):
    """A single rule raised or returned malformed data.

    Only ever logged by the rule runner; never reaches callers.
    """

    def __init__(self, rule_type: str, message: str):
        super().__init__(f"Rule {rule_type} failed: {message}")
        self.rule_type = rule_type


class SnapshotUnavailable(NudgeEngineError):
    """The data source could not produce a snapshot for the user."""


class InvalidMutationTarget(NudgeEngineError):
    """An outcome mutation named a nudge the caller may not touch."""

    def __init__(self, nudge_id: int, message: str):
        super().__init__(message)
        self.nudge_id = nudge_id


class NudgeNotFound(InvalidMutationTarget):
    def __init__(self, nudge_id: int):
        super().__init__(nudge_id, f"Nudge {nudge_id} not found")


class NudgeForbidden(InvalidMutationTarget):
    def __init__(self, nudge_id: int, user_id: int):
        super().__init__(nudge_id, f"Nudge {nudge_id} does not belong to user {user_id}")
        self.user_id = user_id
