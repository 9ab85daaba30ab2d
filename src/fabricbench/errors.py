from __future__ import annotations


class BenchError(RuntimeError):
    pass


class TransportError(BenchError):
    pass


class ApplicationError(BenchError):
    def __init__(self, code: int, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class ValidationFailure(ApplicationError):
    def __init__(self, code: int, message: str, errors: list[str]) -> None:
        super().__init__(code, message)
        self.errors = errors

    def __str__(self) -> str:
        if not self.errors:
            return self.message
        return f"{self.message}: {'; '.join(self.errors)}"


class ValidationError(BenchError, ValueError):
    pass


class WorkflowAborted(BenchError):
    pass


class WorkflowBusy(BenchError):
    pass
