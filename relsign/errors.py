"""Error taxonomy for relsign.

Every failure is fatal to the run. Errors propagate to the command line,
which reports them and exits non-zero; nothing is recovered locally.
"""

from __future__ import annotations

from typing import List, Sequence, Tuple, TYPE_CHECKING

if TYPE_CHECKING:
    from relsign.deep_path import DeepPath


class RelsignError(Exception):
    """Base class for all relsign errors."""
    pass


class ConfigError(RelsignError):
    """Configuration error (bad settings file, bad sign plan, missing credentials)."""
    pass


class PlanValidationError(ConfigError):
    """Sign plan failed schema validation."""

    def __init__(self, message: str, errors: Sequence[str] = ()):
        super().__init__(message)
        self.errors: List[str] = list(errors)

    def __str__(self) -> str:
        if not self.errors:
            return super().__str__()
        lines = [super().__str__()]
        lines.extend(f"  - {e}" for e in self.errors)
        return "\n".join(lines)


class DeepPathOverflowError(ConfigError):
    """A DeepPath was extended past its fixed capacity."""
    pass


class UnsupportedFileError(ConfigError):
    """The source tree contains something other than directories and regular files."""
    pass


class ArchiveError(RelsignError):
    """Corrupt or unreadable archive."""
    pass


class SigningError(RelsignError):
    """An external signing tool failed.

    ``output`` carries whatever the tool printed (stdout and stderr merged).
    """

    def __init__(self, message: str, output: str = ""):
        super().__init__(message)
        self.output = output

    def __str__(self) -> str:
        base = super().__str__()
        if self.output.strip():
            return f"{base}\n{self.output.rstrip()}"
        return base


class VerificationError(SigningError):
    """Post-sign verification rejected the signed artifact."""
    pass


class CompletenessError(RelsignError):
    """Sign plan entries were never matched to a file in the source tree."""

    def __init__(self, missing: Sequence["DeepPath"]):
        self.missing: List["DeepPath"] = list(missing)
        super().__init__(
            f"{len(self.missing)} file(s) should have been signed but weren't: "
            + ", ".join(str(p) for p in self.missing)
        )


class DeterminismError(RelsignError):
    """Byte-identical sources produced different destinations."""

    def __init__(self, violations: Sequence[Tuple["DeepPath", "DeepPath"]]):
        self.violations: List[Tuple["DeepPath", "DeepPath"]] = list(violations)
        super().__init__(
            "bug detected in release signing: "
            f"{len(self.violations)} destination pair(s) differ despite bit-identical sources"
        )


class ManifestError(RelsignError):
    """Digest manifest does not match the files on disk."""
    pass


class CLIError(RelsignError):
    """CLI error with exit code."""

    def __init__(self, message: str, exit_code: int = 1):
        super().__init__(message)
        self.exit_code = exit_code
