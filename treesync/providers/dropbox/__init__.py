from .client import DropboxClient

__all__ = ["DropboxClient"]
