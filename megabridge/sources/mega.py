"""MEGA public folder source"""

import asyncio
import base64
import json
import re
import struct
from typing import Any, AsyncIterator, Dict, Optional, Tuple

import aiohttp
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from megabridge.sources.base import (
    FolderRef,
    FolderSource,
    RateLimitedError,
    RemoteFile,
    RemoteFolder,
    SourceError,
)
from megabridge.utils.logger import get_logger

logger = get_logger(__name__)

MEGA_API_URL = "https://g.api.mega.co.nz/cs"
CHUNK_SIZE = 256 * 1024

FOLDER_URL_PATTERN = re.compile(r"mega(?:\.co)?\.nz/folder/([^#/?]+)#([^/?\s]+)")
LEGACY_FOLDER_URL_PATTERN = re.compile(r"mega(?:\.co)?\.nz/#F!([^!]+)!([^!/?\s]+)")

API_ERRORS = {
    -1: "EINTERNAL (-1): An internal error has occurred",
    -2: "EARGS (-2): Invalid arguments",
    -3: "EAGAIN (-3): Temporary congestion or server malfunction",
    -4: "ERATELIMIT (-4): Too many requests, command quota exceeded",
    -6: "ETOOMANY (-6): Too many concurrent connections or IP addresses",
    -9: "ENOENT (-9): Object not found",
    -11: "EACCESS (-11): Access violation",
    -14: "EKEY (-14): A decryption operation failed",
    -16: "EBLOCKED (-16): Resource blocked",
    -17: "EOVERQUOTA (-17): Request over quota",
    -18: "ETEMPUNAVAIL (-18): Resource temporarily not available",
}
RATE_LIMIT_CODES = {-4, -6}
RATE_LIMIT_HTTP_STATUSES = {429, 509}
EAGAIN = -3


def base64_url_decode(data: str) -> bytes:
    """Decode MEGA's unpadded URL-safe base64"""
    data = data.replace(",", "")
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def api_error(code: int) -> SourceError:
    message = API_ERRORS.get(code, f"Unknown MEGA API error ({code})")
    if code in RATE_LIMIT_CODES:
        return RateLimitedError(message)
    return SourceError(message)


def decrypt_key(encrypted: bytes, master_key: bytes) -> bytes:
    """Decrypt a node key with AES-ECB under the folder key"""
    if len(encrypted) % 16:
        raise SourceError(f"Invalid node key length: {len(encrypted)}")
    decryptor = Cipher(algorithms.AES(master_key), modes.ECB()).decryptor()
    return decryptor.update(encrypted) + decryptor.finalize()


def split_file_key(key: bytes) -> Tuple[bytes, bytes]:
    """
    Derive the content key and CTR nonce from a 32-byte file key.

    The file key packs eight 32-bit words: the AES key is words 0-3 XOR 4-7,
    words 4-5 are the nonce and words 6-7 the meta-MAC.
    """
    words = struct.unpack(">8I", key)
    aes_key = struct.pack(">4I", *(words[i] ^ words[i + 4] for i in range(4)))
    counter = struct.pack(">2I", words[4], words[5]) + b"\x00" * 8
    return aes_key, counter


def decrypt_attributes(encrypted: str, key: bytes) -> Dict[str, Any]:
    """Decrypt a node's 'MEGA{...}' attribute block (AES-CBC, zero IV)"""
    data = base64_url_decode(encrypted)
    data += b"\x00" * (-len(data) % 16)
    decryptor = Cipher(algorithms.AES(key), modes.CBC(b"\x00" * 16)).decryptor()
    plain = (decryptor.update(data) + decryptor.finalize()).rstrip(b"\x00")
    if not plain.startswith(b"MEGA{"):
        raise SourceError("Attribute decryption failed")
    return json.loads(plain[4:].decode("utf-8", errors="replace"))


class MegaFile(RemoteFile):
    """A file node inside a MEGA folder link"""

    def __init__(
        self,
        source: "MegaSource",
        folder_id: str,
        node_id: str,
        name: str,
        size: int,
        timestamp: Optional[int],
        key: bytes,
        counter: bytes,
    ):
        self._source = source
        self._folder_id = folder_id
        self._key = key
        self._counter = counter
        self.node_id = node_id
        self.name = name
        self.size = size
        self.timestamp = timestamp

    async def stream(self) -> AsyncIterator[bytes]:
        result = await self._source.api_request({"a": "g", "g": 1, "n": self.node_id}, self._folder_id)
        url = result.get("g") if isinstance(result, dict) else None
        if not isinstance(url, str) or not url:
            raise SourceError(f"No download URL returned for node {self.node_id}")

        decryptor = Cipher(algorithms.AES(self._key), modes.CTR(self._counter)).decryptor()
        session = await self._source.get_session()

        try:
            # No total timeout: large files legitimately take hours
            timeout = aiohttp.ClientTimeout(total=None, sock_connect=self._source.timeout_seconds)
            async with session.get(url, timeout=timeout) as response:
                if response.status in RATE_LIMIT_HTTP_STATUSES:
                    raise RateLimitedError(f"Too many requests: transfer quota exceeded (HTTP {response.status})")
                if response.status != 200:
                    raise SourceError(f"Download host returned HTTP {response.status}")

                async for chunk in response.content.iter_chunked(CHUNK_SIZE):
                    yield decryptor.update(chunk)
        except asyncio.TimeoutError as e:
            raise SourceError("Download connection timed out") from e
        except aiohttp.ClientError as e:
            raise SourceError(f"Download connection failed: {e}") from e

        tail = decryptor.finalize()
        if tail:
            yield tail


class MegaSource(FolderSource):
    """
    Reads MEGA public folder links.

    Listing uses the 'f' API command addressed to the shared folder with the
    'n' query parameter; node keys and attributes are decrypted with the
    folder key from the link, and file content with AES-CTR while streaming.
    """

    def __init__(self, timeout_seconds: int = 60, max_attempts: int = 3):
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max_attempts
        self._session: Optional[aiohttp.ClientSession] = None
        self._sequence = 0

    def parse_url(self, url: str) -> Optional[FolderRef]:
        match = FOLDER_URL_PATTERN.search(url) or LEGACY_FOLDER_URL_PATTERN.search(url)
        if not match:
            return None
        return FolderRef(folder_id=match.group(1), folder_key=match.group(2))

    async def get_session(self) -> aiohttp.ClientSession:
        if not self._session or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def close(self):
        """Close HTTP session"""
        if self._session:
            await self._session.close()
            self._session = None

    async def api_request(self, command: Dict[str, Any], folder_id: str) -> Any:
        """Send one API command scoped to a shared folder, retrying on EAGAIN"""
        session = await self.get_session()

        for attempt in range(self.max_attempts):
            self._sequence += 1
            params = {"id": str(self._sequence), "n": folder_id}
            try:
                async with session.post(MEGA_API_URL, params=params, json=[command]) as response:
                    if response.status in RATE_LIMIT_HTTP_STATUSES:
                        raise RateLimitedError(f"Too many requests (HTTP {response.status})")
                    if response.status != 200:
                        raise SourceError(f"MEGA API returned HTTP {response.status}")
                    data = await response.json(content_type=None)
            except asyncio.TimeoutError as e:
                raise SourceError("MEGA API request timed out") from e
            except aiohttp.ClientError as e:
                raise SourceError(f"MEGA API request failed: {e}") from e

            result = data[0] if isinstance(data, list) and data else data
            if isinstance(result, int) and result < 0:
                if result == EAGAIN and attempt + 1 < self.max_attempts:
                    logger.warning(f"MEGA API busy, retry {attempt + 1}/{self.max_attempts}")
                    await asyncio.sleep(0.5 * (attempt + 1))
                    continue
                raise api_error(result)
            return result

        raise api_error(EAGAIN)

    async def open_folder(self, folder_id: str, folder_key: str) -> RemoteFolder:
        logger.info("Loading MEGA folder", folder_id=folder_id)

        try:
            master_key = base64_url_decode(folder_key)
        except (ValueError, TypeError) as e:
            raise SourceError(f"Invalid folder key: {e}") from e
        if len(master_key) != 16:
            raise SourceError("Invalid folder key length")

        result = await self.api_request({"a": "f", "c": 1, "ca": 1, "r": 1}, folder_id)
        nodes = result.get("f", []) if isinstance(result, dict) else []
        if not nodes:
            raise SourceError("Folder is empty or unavailable")
        handles = {node.get("h") for node in nodes}

        folder_name = None
        files = []
        skipped = 0

        for node in nodes:
            try:
                key = self._node_key(node, master_key)
                if node.get("t") == 1:
                    attributes = decrypt_attributes(node["a"], key[:16])
                    if folder_name is None and node.get("p") not in handles:
                        folder_name = attributes.get("n")
                elif node.get("t") == 0:
                    aes_key, counter = split_file_key(key)
                    attributes = decrypt_attributes(node["a"], aes_key)
                    files.append(
                        MegaFile(
                            source=self,
                            folder_id=folder_id,
                            node_id=node["h"],
                            name=attributes.get("n") or "unknown",
                            size=node.get("s") or 0,
                            timestamp=node.get("ts"),
                            key=aes_key,
                            counter=counter,
                        )
                    )
            except (SourceError, KeyError, ValueError, struct.error) as e:
                skipped += 1
                logger.debug(f"Skipping undecryptable node {node.get('h')}: {e}")

        if skipped:
            logger.warning("Some folder nodes could not be decrypted", folder_id=folder_id, skipped=skipped)

        return RemoteFolder(folder_id=folder_id, name=folder_name, files=files)

    @staticmethod
    def _node_key(node: Dict[str, Any], master_key: bytes) -> bytes:
        """Decrypt the node key; 'k' is 'owner:key' pairs separated by '/'"""
        raw = node.get("k") or ""
        encrypted = raw.split("/")[0].split(":")[-1]
        if not encrypted:
            raise SourceError("Node has no key")
        return decrypt_key(base64_url_decode(encrypted), master_key)
