"""Customized WMSSource exceptions."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Generator, Sequence


class ConfigurationError(ValueError):
    """Exception raised when the source cannot be configured.

    Parameters
    ----------
    msg : str
        The exception error message
    """

    def __init__(self, msg: str) -> None:
        self.message = msg
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message


class InputValueError(ConfigurationError):
    """Exception raised for invalid input.

    Parameters
    ----------
    inp : str
        Name of the input parameter
    valid_inputs : tuple
        List of valid inputs
    given : str, optional
        The given input, defaults to None.
    """

    def __init__(
        self,
        inp: str,
        valid_inputs: Sequence[str | int] | Generator[str | int, None, None],
        given: str | int | None = None,
    ) -> None:
        if given is None:
            msg = f"Given {inp} is invalid. Valid options are:\n"
        else:
            msg = f"Given {inp} ({given}) is invalid. Valid options are:\n"
        super().__init__(msg + "\n".join(str(i) for i in valid_inputs))


class InputTypeError(ConfigurationError):
    """Exception raised when a function argument type is invalid.

    Parameters
    ----------
    arg : str
        Name of the function argument
    valid_type : str
        The valid type of the argument
    example : str, optional
        An example of a valid form of the argument, defaults to None.
    """

    def __init__(self, arg: str, valid_type: str, example: str | None = None) -> None:
        msg = f"The {arg} argument should be of type {valid_type}"
        if example is not None:
            msg += f":\n{example}"
        super().__init__(msg)


class MissingInputError(ConfigurationError):
    """Exception raised when there are missing function arguments or document nodes."""


class UnsupportedVersionError(ConfigurationError):
    """Exception raised when the service speaks a WMS version that can't be templated.

    Parameters
    ----------
    version : str
        The version advertised by the service.
    supported : tuple of str
        The supported versions.
    """

    def __init__(self, version: str, supported: Sequence[str]) -> None:
        self.version = version
        super().__init__(
            f"WMS version {version} is not supported. Supported versions are: "
            + ", ".join(supported)
        )


class TransportError(ConnectionError):
    """Exception raised when a request to the service fails.

    Parameters
    ----------
    url : str
        The requested url
    err : str, optional
        The underlying error message, defaults to None.
    """

    def __init__(self, url: str, err: str | None = None) -> None:
        self.url = url
        if err is None:
            self.message = f"Request failed:\n{url}"
        else:
            self.message = f"Request failed with the following error:\n{err}\nURL: {url}"
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message


class ServiceError(TransportError):
    """Exception raised when the requested data is not available on the server.

    Parameters
    ----------
    err : str
        Service error message.
    url : str, optional
        The requested url, defaults to None.
    """

    def __init__(self, err: str, url: str | None = None) -> None:
        self.url = url
        self.message = "Service returned the following error message:\n"
        if url is None:
            self.message += err
        else:
            self.message += f"URL: {url}\nERROR: {err}\n"
        ConnectionError.__init__(self, self.message)


class ServiceUnavailableError(TransportError):
    """Exception raised when the service is not available.

    Parameters
    ----------
    url : str
        The server url
    """

    def __init__(self, url: str) -> None:
        self.url = url
        self.message = f"Service is currently not available, try again later:\n{url}"
        ConnectionError.__init__(self, self.message)


class ParseError(ValueError):
    """Exception raised when a response payload can't be parsed.

    Parameters
    ----------
    what : str
        What was being parsed, e.g., ``capabilities document``.
    err : str
        The parser error message.
    """

    def __init__(self, what: str, err: str) -> None:
        self.message = f"Failed to parse the {what}:\n{err}"
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message


class ExpressionError(ValueError):
    """Exception raised when an expression can't be parsed or evaluated.

    Parameters
    ----------
    expression : str
        The offending expression.
    err : str
        The error message.
    """

    def __init__(self, expression: str, err: str) -> None:
        self.expression = expression
        self.message = f"Error when evaluating the expression '{expression}': {err}"
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message


class ResourceError(MemoryError):
    """Exception raised when a frame buffer can't be allocated."""

    def __init__(self, msg: str) -> None:
        self.message = msg
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message


class SourceStateError(RuntimeError):
    """Exception raised when the source is used outside of its lifecycle.

    Parameters
    ----------
    state : str
        The current state of the source.
    expected : tuple of str
        The states in which the operation is allowed.
    """

    def __init__(self, state: str, expected: Sequence[str]) -> None:
        self.message = (
            f"The source is {state}, this operation requires it to be "
            + " or ".join(expected)
            + "."
        )
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message
