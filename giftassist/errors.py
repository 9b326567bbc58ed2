class GiftAssistError(Exception):
    """
    Base class for every error raised by giftassist.
    """

    msg = "gift assistant failed"


class IngestValidationError(GiftAssistError):
    """
    Raised when an upload is rejected before anything is written.

    The message is meant for the vendor that uploaded the file, so it is
    returned verbatim by the HTTP API with a 4xx status.
    """

    msg = "upload rejected"
