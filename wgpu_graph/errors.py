"""
Exception types raised by the graph compiler and runtime.

Every error aborts the current compile or run; nothing is retried locally.
Device-level failures (pipeline compilation, buffer mapping) are left to
propagate from wgpu unchanged.
"""


class GraphError(Exception):
    """Base class for all wgpu_graph errors."""


class ShapeMismatchError(GraphError, ValueError):
    """Operand shapes are incompatible for the requested operation."""

    def __init__(self, operation: str, *shapes, detail: str = ""):
        self.operation = operation
        self.shapes = [tuple(s) for s in shapes]
        rendered = ", ".join(str(list(s)) for s in self.shapes)
        message = f"{operation}: incompatible shapes {rendered}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class BindingResolutionError(GraphError, KeyError):
    """A buffer name was requested that no kernel registered or allocated."""

    def __init__(self, name: str, where: str = ""):
        self.name = name
        self.where = where
        suffix = f" in {where}" if where else ""
        super().__init__(f"No binding registered for buffer '{name}'{suffix}")

    def __str__(self):
        # KeyError would otherwise wrap the message in quotes
        return self.args[0]


class InputSizeMismatchError(GraphError, ValueError):
    """Data handed to a tensor does not match its declared element count."""

    def __init__(self, name: str, expected: int, got: int):
        self.name = name
        self.expected = expected
        self.got = got
        super().__init__(
            f"Input size mismatch for '{name}'. Expected {expected}, got {got}"
        )


class CompileError(GraphError, RuntimeError):
    """The graph cannot be compiled or has not been compiled yet."""


class DeviceError(GraphError, RuntimeError):
    """No GPU adapter or device could be acquired."""
