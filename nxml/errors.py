"""
Exception hierarchy for the tensor engine and its collaborators.

Every error raised by nxml derives from NxmlError and also from the builtin
exception a caller would naturally expect (ValueError for bad shapes,
IndexError for bad gather indices, MemoryError for failed allocations), so
code that only knows about the builtins still catches them.

Shape and index violations are programming errors in the caller. Kernels
detect them before writing any output and never try to recover.
"""


class NxmlError(Exception):
    """Base class for all nxml errors."""


class InvalidShapeError(NxmlError, ValueError):
    """A shape is malformed, or data does not fill the shape exactly."""


class ShapeMismatchError(NxmlError, ValueError):
    """Operand shapes or element types violate a kernel's contract."""


class IndexOutOfRangeError(NxmlError, IndexError):
    """A gather or token index points outside its source."""


class AllocationError(NxmlError, MemoryError):
    """An output buffer could not be allocated."""


class ImmutableTensorError(NxmlError, RuntimeError):
    """A TensorBuilder was used after its buffer was frozen."""


class FormatError(NxmlError, ValueError):
    """A model file does not follow the ggml layout."""
