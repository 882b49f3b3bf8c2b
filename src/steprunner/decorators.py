from typing import Any, Callable, Optional, Protocol


class StepMetadata:
    """Metadata storage for step decorators."""

    def __init__(self) -> None:
        self.label: Optional[str] = None
        self.ignorable: bool = False
        self.condition: Optional[Callable[[], bool]] = None


class StepFunction(Protocol):
    _step_metadata: StepMetadata
    __name__: str

    def __call__(self, *args: Any, **kwargs: Any) -> Any: ...


def _ensure_metadata(func: StepFunction) -> StepMetadata:
    """Ensure that a function has a _step_metadata attribute."""
    if not hasattr(func, "_step_metadata"):
        func._step_metadata = StepMetadata()
    return func._step_metadata


def get_metadata(func: Callable[..., Any]) -> StepMetadata:
    return getattr(func, "_step_metadata", None) or StepMetadata()


def step(label: Optional[str] = None) -> Callable[[StepFunction], StepFunction]:
    """Decorator to mark a function as a provisioning step."""

    def decorator(func: StepFunction) -> StepFunction:
        metadata = _ensure_metadata(func)
        metadata.label = label if label is not None else func.__name__.replace("_", " ")
        return func

    return decorator


def ignorable(func: StepFunction) -> StepFunction:
    """Decorator to let the run continue when this step fails."""
    _ensure_metadata(func).ignorable = True
    return func


def when(predicate: Callable[[], bool]) -> Callable[[StepFunction], StepFunction]:
    """Decorator to skip the step unless ``predicate()`` is true at run time."""

    def decorator(func: StepFunction) -> StepFunction:
        metadata = _ensure_metadata(func)
        metadata.condition = predicate
        return func

    return decorator
