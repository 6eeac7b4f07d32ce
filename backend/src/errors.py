"""Error kinds raised across the blur pipeline and export path."""


class BlurwallError(Exception):
    """Base class. The message is safe to show to the user."""


class NoSourceSelected(BlurwallError):
    def __init__(self, message: str = "No image selected"):
        super().__init__(message)


class DecodeFailure(BlurwallError):
    pass


class BlurFailure(BlurwallError):
    pass


class ExportProvisionFailure(BlurwallError):
    pass


class ExportEncodeFailure(BlurwallError):
    pass
