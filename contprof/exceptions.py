import requests


class ProfilerError(Exception):
    pass


class ProfilerStartError(ProfilerError):
    pass


class SessionError(ProfilerError):
    pass


class IngestError(ProfilerError):
    def __init__(
        self, message: str, response: "requests.Response | None" = None
    ) -> None:
        """
        Arguments:
            message: Human readable description of the failure
            response: The response that caused the failure, if any
        """
        super().__init__(message)
        self.response = response

    @property
    def status_code(self) -> "int | None":
        if self.response is None:
            return None
        return self.response.status_code


class IngestClientError(IngestError):
    """
    The backend rejected the push with a 4xx status, retrying won't help.
    """
