from .monitoring import PeerService, SpanAttr

__all__ = ["PeerService", "SpanAttr"]
