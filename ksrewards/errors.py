from typing import Optional


class KsRewardsError(Exception):
    pass


class UpstreamError(KsRewardsError):
    """A call to the game backend could not be completed"""


class ClientRejectedError(UpstreamError):
    """The backend answered with a 4xx other than 429; never retried"""

    def __init__(self, status_code: int, message: str = ""):
        self.status_code = status_code
        super().__init__(f"HTTP {status_code} rejected" + (f": {message}" if message else ""))


class RetriesExhaustedError(UpstreamError):
    def __init__(self, url: str, attempts: int, last_error: Optional[str] = None, last_data: Optional[dict] = None):
        self.url = url
        self.attempts = attempts
        self.last_error = last_error
        # JSON body of the last attempt when it was a "please retry" answer
        self.last_data = last_data
        detail = f" (last error: {last_error})" if last_error else ""
        super().__init__(f"All {attempts} attempts failed for request to {url}{detail}")


class UpstreamResponseError(UpstreamError):
    """The backend answered 200 with a body that is not a JSON object"""


class DiscoveryError(KsRewardsError):
    pass


class InvalidRequestError(KsRewardsError):
    pass


class AccountNotFoundError(KsRewardsError):
    pass


class AccountInactiveError(KsRewardsError):
    pass


class PlayerLookupError(KsRewardsError):
    """The backend does not know the player or refused the login"""


class CodeExistsError(KsRewardsError):
    pass


class CodeNotFoundError(KsRewardsError):
    pass


class ShutdownRequested(KsRewardsError):
    """Raised out of a wait when the process is stopping"""
