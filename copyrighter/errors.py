"""Exceptions raised by the copyrighter pipeline."""


class CopyrighterError(Exception):
    """Base class for all pipeline errors."""


class ColumnNotFound(CopyrighterError, KeyError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Could not find column holding '{name}' data")

    def __reduce__(self):
        return type(self), (self.name,)

    def __str__(self) -> str:
        return self.args[0]


class UnsupportedDomain(CopyrighterError, ValueError):
    def __init__(self, domain: str):
        self.domain = domain
        super().__init__(f"Unsupported domain '{domain}' (expected Bacteria, Archaea or Eukaryota)")

    def __reduce__(self):
        return type(self), (self.domain,)


class TreeParseError(CopyrighterError, ValueError):
    pass


class TreeTopologyError(CopyrighterError):
    pass


class NoKnownValues(CopyrighterError, ValueError):
    pass


class EmptySampleError(CopyrighterError, ValueError):
    def __init__(self, sample: str):
        self.sample = sample
        super().__init__(f"Sample '{sample}' has no taxa left after trait lookup")

    def __reduce__(self):
        return type(self), (self.sample,)


class InvalidTraitValue(CopyrighterError, ValueError):
    def __init__(self, taxon: str, value: float):
        self.taxon = taxon
        self.value = value
        super().__init__(f"Invalid trait value {value!r} for taxon '{taxon}'")

    def __reduce__(self):
        return type(self), (self.taxon, self.value)


class MalformedRecord(CopyrighterError, ValueError):
    def __init__(self, path: str, line_no: int, reason: str):
        self.path = path
        self.line_no = line_no
        self.reason = reason
        super().__init__(f"{path}:{line_no}: {reason}")

    def __reduce__(self):
        return type(self), (self.path, self.line_no, self.reason)


class UnmatchedTaxaError(CopyrighterError):
    """No taxon of an input could be matched with the chosen lookup scheme."""
