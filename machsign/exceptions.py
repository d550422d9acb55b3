class MachSignError(Exception):
    def __init__(self, reason):
        self.reason = reason

    def __str__(self):
        return self.reason


class MalformedRecordError(MachSignError):
    """The input is not a Mach-O image (or signature blob) we can reason about"""


class TruncatedInputError(MalformedRecordError):
    def __init__(self, position: int, wanted: int, available: int):
        self.position = position
        self.wanted = wanted
        self.available = available
        super().__init__(
            f"Tried to read {wanted} bytes at offset 0x{position:X} "
            f"but only {available} remain"
        )


class StructuralPreconditionError(MachSignError):
    """The executable or bundle is well formed but cannot be signed safely"""


class SizeMismatchError(MachSignError):
    def __init__(self, expected: int, actual: int, what: str = "CMS signature"):
        self.expected = expected
        self.actual = actual
        self.what = what
        super().__init__(
            f"{what} length changed between passes ({expected} -> {actual} bytes), "
            "the header offsets already written are no longer valid"
        )


class ConfigurationError(MachSignError):
    pass
