"""Abstract base class for remote upload backends."""

from abc import ABC, abstractmethod
from typing import Any, Dict, List


class AbstractUploadBackend(ABC):
    """Remote side of the reserve / transfer / confirm handshake.

    Every method is a coroutine. Implementations raise BackendError for
    retryable failures and SessionNotFoundError when the backend does not
    know the session.
    """

    @abstractmethod
    async def create_session(self, subject_id: str, owner_id: str) -> str:
        """Register a new recording session.

        Returns:
            Session identifier issued by the backend
        """
        pass

    @abstractmethod
    async def reserve_upload_destination(self, session_id: str, segment_id: str, sequence_number: int) -> str:
        """Mint a one-time write destination for one segment.

        Returns:
            Destination handle (a presigned URL for the HTTP backend)
        """
        pass

    @abstractmethod
    async def transfer(self, destination: str, data: bytes) -> None:
        """Write the segment bytes to a reserved destination."""
        pass

    @abstractmethod
    async def confirm_uploaded(self, session_id: str, segment_id: str, sequence_number: int,
                               checksum: str) -> None:
        """Tell the backend a transfer completed. Must be idempotent."""
        pass

    @abstractmethod
    async def complete_session(self, session_id: str, total_segments: int) -> None:
        """Mark a session finished on the backend."""
        pass

    @abstractmethod
    async def fetch_confirmed_segments(self, session_id: str) -> List[str]:
        """List the segment ids the backend holds as durably received."""
        pass

    async def close(self) -> None:
        """Release network resources."""
        pass

    def get_display_info(self) -> Dict[str, Any]:
        return {"backend": type(self).__name__}
