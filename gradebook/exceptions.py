class GradingError(Exception):
    """Base class for errors raised by the grading services."""


class NotFound(GradingError):
    """A referenced program, class group, class, term, period, gradebook or subject does not exist."""

    def __init__(self, entity: str, entity_id=None):
        self.entity = entity
        self.entity_id = entity_id
        if entity_id is None:
            message = f"{entity} not found"
        else:
            message = f"{entity} {entity_id} not found"
        super().__init__(message)


class InvalidState(GradingError):
    """Stored configuration is inconsistent (empty override payload, inverted dates, ...)."""


class AlreadyInitialized(InvalidState):
    """A gradebook already exists for the class."""

    def __init__(self, class_id):
        self.class_id = class_id
        super().__init__(f"Gradebook already initialized for class {class_id}")
