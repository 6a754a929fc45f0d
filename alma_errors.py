"""
Exception types raised by the Alma API toolkit.

Two families matter to callers:
- per-item errors (bad status, timeout, unparseable body) are collected and reported,
  and sibling items keep going.
- cancellation errors (`RequestCancelledError` and its `ThresholdReachedError` subclass)
  mean the whole run is stopping; callers check for them with isinstance(), never by message text.
"""


class AlmaToolkitError(Exception):
    """
    Base class for every error raised by the toolkit.
    """


class ConfigurationError(AlmaToolkitError):
    """
    Invalid flags or missing API key; raised before any concurrent work starts.
    """


class APIStatusError(AlmaToolkitError):
    """
    The API answered with a status other than the success status for the method.
    """

    def __init__(self, method: str, url: str, status_code: int, body: str) -> None:
        self.method: str = method
        self.url: str = url
        self.status_code: int = status_code
        self.body: str = body
        super().__init__(f'{method} {url} failed [{status_code}]\n{body}')


class RequestTimeoutError(AlmaToolkitError):
    """
    A call (including its retries) did not finish inside the per-call window.
    """

    def __init__(self, method: str, url: str, timeout_s: float) -> None:
        self.method: str = method
        self.url: str = url
        self.timeout_s: float = timeout_s
        super().__init__(f'{method} {url}: no successful response within {timeout_s:g} seconds')


class ResponseParseError(AlmaToolkitError):
    """
    A response body could not be read as the expected XML document.
    """

    def __init__(self, what: str, detail: str, body: str) -> None:
        self.what: str = what
        self.body: str = body
        super().__init__(f'unmarshalling {what} XML failed: {detail}\n{body}')


class SetResolutionError(AlmaToolkitError):
    """
    A set name or ID could not be turned into exactly one usable set.
    """


class MemberCountMismatchError(AlmaToolkitError):
    """
    The number of unique members fetched differs from the set's declared size.
    """

    def __init__(self, found: int, expected: int) -> None:
        self.found: int = found
        self.expected: int = expected
        super().__init__(f'{found} members found for set with size {expected}')


class RequestCancelledError(AlmaToolkitError):
    """
    The run was cancelled (interrupt signal, end of run, or a threshold breach).
    """


class ThresholdReachedError(RequestCancelledError):
    """
    The server-reported number of remaining API calls is at or below the threshold.
    """

    def __init__(self, remaining: int, threshold: int) -> None:
        self.remaining: int = remaining
        self.threshold: int = threshold
        super().__init__(f'call threshold of {threshold} reached, {remaining} calls remaining')
