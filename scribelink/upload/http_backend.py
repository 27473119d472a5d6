"""HTTP upload backend talking to the session API with aiohttp."""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import aiohttp
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .base import AbstractUploadBackend
from ..errors import BackendError, SessionNotFoundError

logger = logging.getLogger(__name__)


class _ApiModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class SessionCreatedResponse(_ApiModel):
    session_id: str = Field(alias="sessionId")
    upload_url: Optional[str] = Field(default=None, alias="uploadUrl")


class PresignedUrlResponse(_ApiModel):
    presigned_url: str = Field(alias="presignedUrl")


class RemoteSegment(_ApiModel):
    chunk_id: str
    sequence_number: int
    status: str


class SessionStatusResponse(_ApiModel):
    session_id: str = Field(alias="sessionId")
    status: str
    total_chunks: int = Field(default=0, alias="totalChunks")
    uploaded_chunks: int = Field(default=0, alias="uploadedChunks")
    chunks: List[RemoteSegment] = Field(default_factory=list)


class HttpUploadBackend(AbstractUploadBackend):
    """Backend speaking the JSON session API plus presigned-URL PUTs."""

    def __init__(self, base_url: str, api_version: str = "v1", request_timeout: float = 30.0):
        """Initialize HTTP backend.

        Args:
            base_url: API root, e.g. http://localhost:3000/api
            api_version: Path prefix of the versioned endpoints
            request_timeout: Total timeout for each request in seconds
        """
        self.base_url = base_url.rstrip('/')
        self.api_version = api_version
        self.timeout = aiohttp.ClientTimeout(total=request_timeout)
        self.headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

        logger.info(f"HttpUploadBackend initialized with base URL: {self.base_url}/{api_version}")

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{self.api_version}/{path}"

    async def _request_json(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None,
                            not_found_is_session: bool = False) -> Dict[str, Any]:
        url = self._url(path)
        logger.debug(f"REQUEST[{method}] => {url}")
        try:
            async with aiohttp.ClientSession(timeout=self.timeout, headers=self.headers) as session:
                async with session.request(method, url, json=payload) as response:
                    if response.status == 404 and not_found_is_session:
                        raise SessionNotFoundError(f"Session not found: {payload or path}", status=404)
                    if response.status >= 400:
                        error_text = await response.text()
                        raise BackendError(f"{method} {path} failed: {response.status} - {error_text}",
                                           status=response.status)
                    data = await response.json(content_type=None)
                    logger.debug(f"RESPONSE[{response.status}] => {data}")
                    return data or {}
        except aiohttp.ClientError as e:
            raise BackendError(f"{method} {path} failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise BackendError(f"{method} {path} timed out after {self.timeout.total}s") from e

    async def create_session(self, subject_id: str, owner_id: str) -> str:
        data = await self._request_json("POST", "upload-session",
                                        {"patientId": subject_id, "userId": owner_id})
        try:
            return SessionCreatedResponse.model_validate(data).session_id
        except ValidationError as e:
            raise BackendError(f"Unexpected upload-session response: {e}") from e

    async def reserve_upload_destination(self, session_id: str, segment_id: str, sequence_number: int) -> str:
        data = await self._request_json(
            "POST", "get-presigned-url",
            {"sessionId": session_id, "chunkId": segment_id, "sequenceNumber": sequence_number},
            not_found_is_session=True,
        )
        try:
            return PresignedUrlResponse.model_validate(data).presigned_url
        except ValidationError as e:
            raise BackendError(f"Unexpected get-presigned-url response: {e}") from e

    async def transfer(self, destination: str, data: bytes) -> None:
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.put(destination, data=data,
                                       headers={"Content-Type": "audio/wav"}) as response:
                    if response.status >= 400:
                        error_text = await response.text()
                        raise BackendError(f"Segment transfer failed: {response.status} - {error_text}",
                                           status=response.status)
        except aiohttp.ClientError as e:
            raise BackendError(f"Segment transfer failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise BackendError(f"Segment transfer timed out after {self.timeout.total}s") from e
        logger.debug(f"Transferred {len(data)} bytes")

    async def confirm_uploaded(self, session_id: str, segment_id: str, sequence_number: int,
                               checksum: str) -> None:
        await self._request_json(
            "POST", "notify-chunk-uploaded",
            {
                "sessionId": session_id,
                "chunkId": segment_id,
                "sequenceNumber": sequence_number,
                "checksum": checksum,
            },
            not_found_is_session=True,
        )

    async def complete_session(self, session_id: str, total_segments: int) -> None:
        await self._request_json("POST", "complete-session",
                                 {"sessionId": session_id, "totalChunks": total_segments},
                                 not_found_is_session=True)

    async def fetch_confirmed_segments(self, session_id: str) -> List[str]:
        data = await self._request_json("GET", f"session/{session_id}", not_found_is_session=True)
        try:
            status = SessionStatusResponse.model_validate(data)
        except ValidationError as e:
            raise BackendError(f"Unexpected session response: {e}") from e
        return [chunk.chunk_id for chunk in status.chunks if chunk.status == "uploaded"]

    def get_display_info(self) -> Dict[str, Any]:
        return {"backend": "http", "base_url": self.base_url, "api_version": self.api_version}
