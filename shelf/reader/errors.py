"""Reader error taxonomy.

Fatal errors (runtime, document open) move a session to FAILED; the rest are
absorbed where they happen and only logged.
"""


class ReaderError(Exception):
    fatal = False


class RuntimeLoadError(ReaderError):
    """The rendering library for a format could not be imported or is unusable."""
    fatal = True


class DocumentOpenError(ReaderError):
    """The book file is missing, corrupt or not in the declared format."""
    fatal = True


class IndexingError(ReaderError):
    """Building the location index failed; the fallback total stays in effect."""


class RenderError(ReaderError):
    """A single page could not be rendered; the previous page stays displayed."""


class ProgressWriteError(ReaderError):
    """The progress store rejected or did not receive a write."""
