"""
Pinata client for pinning audio recordings to IPFS.

Uploads are multipart posts to the pinning API; public URLs are built
from the dedicated gateway hostname and need no network access.
"""

import json
import logging
import time
from datetime import datetime
from typing import Dict, Optional

import httpx

from ..config import settings
from ..models.internal_models import AudioMetadata, UploadResult

logger = logging.getLogger(__name__)


class PinataConfigError(Exception):
    """Raised when Pinata credentials are missing."""
    pass


class PinataUploadError(Exception):
    """Raised when pinning a file to IPFS fails."""
    pass


class PinataClient:
    """
    HTTP client for the Pinata pinning API.

    Configuration is passed explicitly so tests can point the client at a
    substituted endpoint or an ``httpx.MockTransport``.
    """

    def __init__(
        self,
        jwt: str,
        gateway_url: str,
        api_url: str = "https://api.pinata.cloud",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize Pinata client.

        Args:
            jwt: Pinata API JWT
            gateway_url: Dedicated gateway hostname, e.g. example.mypinata.cloud
            api_url: Pinning API base URL
            timeout: Request timeout in seconds (default: 30.0)
            transport: Optional httpx transport override

        Raises:
            PinataConfigError: If the JWT or gateway hostname is missing
        """
        if not jwt:
            raise PinataConfigError("PINATA_JWT is required but not provided")
        if not gateway_url:
            raise PinataConfigError("PINATA_GATEWAY_URL is required but not provided")

        self.jwt = jwt
        self.gateway_url = gateway_url
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

        logger.info("Pinata client initialized")

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.api_url,
            timeout=self.timeout,
            headers={"Authorization": f"Bearer {self.jwt}"},
            transport=self.transport
        )

    async def upload_audio(
        self,
        audio_buffer: bytes,
        metadata: AudioMetadata,
        name: Optional[str] = None,
        keyvalues: Optional[Dict[str, str]] = None,
        cid_version: Optional[int] = None
    ) -> UploadResult:
        """
        Pin an audio recording to IPFS.

        Args:
            audio_buffer: Raw audio bytes
            metadata: Caller-supplied audio metadata, copied into the pin's key/values
            name: Pin name shown in the Pinata dashboard
            keyvalues: Extra queryable key/value tags
            cid_version: IPFS CID version (0 or 1), Pinata default if None

        Returns:
            UploadResult with the content hash, pinned size and timestamp

        Raises:
            PinataUploadError: If the remote call fails for any reason
        """
        try:
            logger.info(f"Uploading audio file to IPFS (size: {len(audio_buffer)} bytes)")

            uploaded_at = datetime.utcnow().isoformat()
            filename = f"audio_{int(time.time() * 1000)}.{metadata.format}"

            pin_keyvalues = {
                "fileType": "audio",
                "format": metadata.format,
                "duration": str(metadata.duration),
                "sampleRate": str(metadata.sampleRate),
                "size": str(metadata.size),
                "uploadedAt": uploaded_at,
            }
            pin_keyvalues.update({key: str(value) for key, value in (keyvalues or {}).items()})

            form_data = {
                "pinataMetadata": json.dumps({
                    "name": name or f"Chinese Learning Audio {uploaded_at}",
                    "keyvalues": pin_keyvalues,
                })
            }
            if cid_version is not None:
                form_data["pinataOptions"] = json.dumps({"cidVersion": cid_version})

            files = {"file": (filename, audio_buffer, f"audio/{metadata.format}")}

            async with self._client() as client:
                response = await client.post("/pinning/pinFileToIPFS", data=form_data, files=files)
                response.raise_for_status()
                payload = response.json()

            result = UploadResult(
                ipfs_hash=payload["IpfsHash"],
                pin_size=int(payload.get("PinSize", len(audio_buffer))),
                timestamp=payload.get("Timestamp", uploaded_at),
                is_duplicate=bool(payload.get("isDuplicate", False))
            )

            logger.info(f"Successfully uploaded to IPFS: {result.ipfs_hash}")
            return result

        except httpx.TimeoutException as e:
            logger.error(f"Timeout uploading audio to IPFS: {e}")
            raise PinataUploadError(f"IPFS upload failed: timeout after {self.timeout}s")
        except httpx.HTTPStatusError as e:
            logger.error(f"HTTP error uploading audio to IPFS: {e}")
            raise PinataUploadError(f"IPFS upload failed: HTTP {e.response.status_code}")
        except Exception as e:
            logger.error(f"Failed to upload audio to IPFS: {e}")
            raise PinataUploadError(f"IPFS upload failed: {e}")

    def get_public_url(self, ipfs_hash: str) -> str:
        """Public gateway URL for a pinned file."""
        return f"https://{self.gateway_url}/ipfs/{ipfs_hash}"

    async def unpin_file(self, ipfs_hash: str) -> bool:
        """
        Remove a pin from IPFS.

        Returns:
            True if the pin was removed, False on any failure
        """
        try:
            async with self._client() as client:
                response = await client.delete(f"/pinning/unpin/{ipfs_hash}")
                response.raise_for_status()

            logger.info(f"Successfully unpinned: {ipfs_hash}")
            return True

        except Exception as e:
            logger.warning(f"Failed to unpin {ipfs_hash}: {e}")
            return False

    async def test_connection(self) -> bool:
        """Check that the JWT is accepted by Pinata."""
        try:
            async with self._client() as client:
                response = await client.get("/data/testAuthentication")
                response.raise_for_status()

            logger.info("Pinata connection test successful")
            return True

        except Exception as e:
            logger.error(f"Pinata connection test failed: {e}")
            return False


# Global client instance
_pinata_client: Optional[PinataClient] = None


def get_pinata_client() -> PinataClient:
    """
    Get the global Pinata client, built from process settings.

    Returns:
        PinataClient: The global Pinata client instance
    """
    global _pinata_client
    if _pinata_client is None:
        _pinata_client = PinataClient(
            jwt=settings.pinata_jwt,
            gateway_url=settings.pinata_gateway_url,
            api_url=settings.pinata_api_url,
            timeout=settings.pinata_timeout
        )
    return _pinata_client
