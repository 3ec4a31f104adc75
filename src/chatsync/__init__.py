"""chatsync: client-side chat state synchronization."""

from chatsync.runtime import ChatRuntime, build_runtime

__version__ = "0.1.0"

__all__ = ["ChatRuntime", "build_runtime", "__version__"]
