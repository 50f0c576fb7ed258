from __future__ import annotations


class RunnerError(Exception):
    """Base class for errors raised inside the execution pipeline."""


class UnsupportedLanguage(RunnerError):
    def __init__(self, language: str):
        super().__init__(f"Unsupported language: {language}")
        self.language = language


class InvalidRequest(RunnerError):
    pass


class SpawnFailed(RunnerError):
    """The OS could not start the program (missing binary, permissions, ...)."""

    def __init__(self, program: str, reason: str):
        super().__init__(f"Failed to start '{program}': {reason}")
        self.program = program
        self.reason = reason


class ProfileConfigError(RunnerError):
    pass
