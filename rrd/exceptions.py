"""
Exceptions raised by the RRD bindings
"""


class RRDError(Exception):
    """Base error for everything raised by the bindings"""


class NativeOperationFailed(RRDError):
    """The engine reported an error for a call; carries its text verbatim"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ArrayIndexError(RRDError, IndexError):
    """Index outside the element count reported for a native string array"""


class LibraryNotFound(RRDError, RuntimeError):
    """librrd could not be located"""


class ValuesReleased(RRDError):
    """The value matrix was already handed back to the engine"""
