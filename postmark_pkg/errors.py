"""
Error taxonomy for Postmark.

Every error raised while reconciling a single post derives from PostmarkError so
the pipeline can catch it at the task boundary without swallowing programming
errors.
"""


class PostmarkError(Exception):
    """Base class for all Postmark errors."""


class ClassificationError(PostmarkError):
    """A directory listing failed while deciding whether a path is a post."""

    def __init__(self, path, reason):
        self.path = path
        self.reason = reason
        super().__init__(f"Could not classify {path}: {reason}")


class NoContentSourceFile(PostmarkError):
    """A post directory has no readable Markdown source file."""

    def __init__(self, directory, reason=None):
        self.directory = directory
        message = f"No content source file in {directory}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class NoCreationDate(PostmarkError):
    """The filesystem could not report timestamps for a post's source file."""

    def __init__(self, path, reason=None):
        self.path = path
        message = f"No creation date available for {path}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class NoSuitableSlug(PostmarkError):
    """A name contains no characters that survive slugging."""

    def __init__(self, name):
        self.name = name
        super().__init__(f"No suitable slug characters in {name!r}")


class RenderIOError(PostmarkError):
    """Deleting or writing a post's rendered output failed."""

    def __init__(self, path, reason):
        self.path = path
        self.reason = reason
        super().__init__(f"Could not write rendered output {path}: {reason}")


class StoreError(PostmarkError):
    """A database operation failed."""
