"""Specialized exception classes for code generation and library builds."""


class CodegenConfigurationError(ValueError):
    """Raised when a model or build is configured in a way that cannot be
    generated or compiled, before any generation work starts."""
    pass


class SourcesNotGeneratedError(RuntimeError):
    """Raised when sources are saved before any have been generated."""
    pass


class CompilationError(RuntimeError):
    """Raised when the CUDA compiler exits with a nonzero status.

    Parameters
    ----------
    returncode
        Exit status of the compiler process.
    command
        Argument list the compiler was invoked with.
    output
        Combined stdout/stderr captured from the compiler.
    """

    def __init__(self, returncode: int, command=None, output: str = ""):
        self.returncode = returncode
        self.command = list(command) if command is not None else []
        self.output = output
        message = (f"CUDA compilation failed with return code "
                   f"{returncode}.")
        if output:
            message += "\n" + output
        super().__init__(message)
