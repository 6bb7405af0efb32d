# Import necessary modules
# ------------------------------------------------------------------------------------------------ #
import warnings
from dataclasses import dataclass
from typing import Dict, List, Mapping
# ------------------------------------------------------------------------------------------------ #


class ModelConstructionError(RuntimeError):
    """Raised when a model cannot be built from the given distribution function and phase volume."""


class FallbackWarning(UserWarning):
    """Issued when a numerical quantity is replaced by a fallback value during model construction."""


@dataclass(frozen=True)
class FallbackEvent:
    """
    Record of a soft numerical fallback.

    Attributes
    ----------
    kind : str
        Either "hypergeometric" (asymptotic expression could not be evaluated) or
        "moment_ratio" (invalid J1/J0 or J3/J0 replaced by its limiting value).
    message : str
        Human-readable description including the offending values.
    x, y : float
        Coordinates of the affected node of the 2D grid.
    """
    kind: str
    message: str
    x: float
    y: float


def report_fallback(events: List[FallbackEvent], kind: str, message: str, x: float, y: float) -> None:
    """Append a fallback event to `events` and issue the corresponding warning."""
    events.append(FallbackEvent(kind, message, float(x), float(y)))
    warnings.warn(message, FallbackWarning, stacklevel=3)


class DiagnosticSink:
    """
    Receiver of tabular diagnostic output produced while constructing a model.
    Each row is a mapping from column name to value.
    """
    def write(self, row: Mapping[str, float]) -> None:
        raise NotImplementedError("Subclasses must implement write(row).")


class NullSink(DiagnosticSink):
    """Discard all diagnostic output."""
    def write(self, row):
        pass


class ListSink(DiagnosticSink):
    """Keep all rows in memory."""
    def __init__(self):
        self.rows: List[Dict[str, float]] = []

    def write(self, row):
        self.rows.append(dict(row))


class TextFileSink(DiagnosticSink):
    """
    Write rows to a tab-separated text file; the header line is taken
    from the column names of the first row.
    """
    def __init__(self, filename: str):
        self.filename = filename
        self._header_written = False
        # truncate any previous content
        open(self.filename, "w").close()

    def write(self, row):
        with open(self.filename, "a") as fh:
            if not self._header_written:
                fh.write("#" + "\t".join(row.keys()) + "\n")
                self._header_written = True
            fh.write("\t".join(f"{val:.10g}" for val in row.values()) + "\n")
