from __future__ import annotations


class DocxBuildError(Exception):
    """Base class for failures that abort a single document build."""

    kind = "DocxBuildError"

    def __init__(self, message: str, *, path: object | None = None) -> None:
        super().__init__(message)
        self.path = path

    def describe(self) -> str:
        return f"{self.kind}: {self}"


class ConfigError(DocxBuildError, ValueError):
    kind = "ConfigError"


class TemplateCorrupt(DocxBuildError, ValueError):
    kind = "TemplateCorrupt"


class TemplateIncomplete(DocxBuildError, ValueError):
    kind = "TemplateIncomplete"


class NoMatchingChapters(DocxBuildError, LookupError):
    kind = "NoMatchingChapters"


class FragmentNotFound(DocxBuildError, FileNotFoundError):
    kind = "FragmentNotFound"


class FragmentCorrupt(DocxBuildError, ValueError):
    kind = "FragmentCorrupt"


class AssemblyFailed(DocxBuildError, RuntimeError):
    """An internal invariant broke while merging or serializing a document.

    Never caused by user input; always a bug in the assembler.
    """

    kind = "AssemblyFailed"

    def __init__(self, message: str, *, problems: list[str] | None = None) -> None:
        super().__init__(message)
        self.problems = list(problems or [])


class WriteError(DocxBuildError, OSError):
    kind = "WriteError"
