from .rest import RestResult, RestTransport
from .stream import StreamSession

__all__ = ["RestResult", "RestTransport", "StreamSession"]
