from .signing import CallbackSigner

__all__ = ["CallbackSigner"]
