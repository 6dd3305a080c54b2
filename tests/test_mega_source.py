"""Unit tests for the MEGA folder source"""

import base64
import json
import os
import struct
from unittest.mock import AsyncMock, patch

import pytest
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from megabridge.sources.base import RateLimitedError, SourceError, is_rate_limit_error
from megabridge.sources.mega import (
    MegaSource,
    api_error,
    base64_url_decode,
    decrypt_attributes,
    split_file_key,
)
from megabridge.utils.logger import sanitize_folder_url


def b64(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def encrypt_ecb(data: bytes, key: bytes) -> bytes:
    encryptor = Cipher(algorithms.AES(key), modes.ECB()).encryptor()
    return encryptor.update(data) + encryptor.finalize()


def encrypt_attributes(attributes: dict, key: bytes) -> str:
    plain = b"MEGA" + json.dumps(attributes).encode()
    plain += b"\x00" * (-len(plain) % 16)
    encryptor = Cipher(algorithms.AES(key), modes.CBC(b"\x00" * 16)).encryptor()
    return b64(encryptor.update(plain) + encryptor.finalize())


def folder_node(handle: str, parent: str, name: str, master_key: bytes) -> dict:
    node_key = os.urandom(16)
    return {
        "h": handle,
        "p": parent,
        "t": 1,
        "a": encrypt_attributes({"n": name}, node_key),
        "k": f"{parent}:{b64(encrypt_ecb(node_key, master_key))}",
    }


def file_node(handle: str, parent: str, name: str, size: int, master_key: bytes) -> dict:
    file_key = os.urandom(32)
    aes_key, _ = split_file_key(file_key)
    return {
        "h": handle,
        "p": parent,
        "t": 0,
        "s": size,
        "ts": 1700000000,
        "a": encrypt_attributes({"n": name}, aes_key),
        "k": f"{parent}:{b64(encrypt_ecb(file_key, master_key))}",
    }


class TestParseUrl:
    """Test folder link parsing"""

    def setup_method(self):
        self.source = MegaSource()

    def test_current_link_format(self):
        """Test that /folder/<id>#<key> links are parsed"""
        ref = self.source.parse_url("https://mega.nz/folder/AbCd1234#S3cr3t-Key_x")

        assert ref.folder_id == "AbCd1234"
        assert ref.folder_key == "S3cr3t-Key_x"

    def test_legacy_link_format(self):
        """Test that #F!<id>!<key> links are parsed"""
        ref = self.source.parse_url("https://mega.nz/#F!AbCd1234!S3cr3tKey")

        assert ref.folder_id == "AbCd1234"
        assert ref.folder_key == "S3cr3tKey"

    def test_subfolder_suffix_is_ignored(self):
        """Test that a trailing /folder/<sub> does not end up in the key"""
        ref = self.source.parse_url("https://mega.nz/folder/AbCd1234#S3cr3tKey/folder/Sub123")

        assert ref.folder_key == "S3cr3tKey"

    @pytest.mark.parametrize(
        "url",
        [
            "",
            "https://example.com/folder/abc#key",
            "https://mega.nz/file/abc#key",
            "https://mega.nz/folder/abc",
        ],
    )
    def test_invalid_links(self, url):
        """Test that non-folder links are not recognised"""
        assert self.source.parse_url(url) is None


class TestCrypto:
    """Test key and attribute handling"""

    def test_base64_url_decode_without_padding(self):
        """Test that unpadded URL-safe base64 decodes"""
        assert base64_url_decode(b64(b"\xfb\xff hello")) == b"\xfb\xff hello"

    def test_split_file_key(self):
        """Test that the content key is the XOR of the key halves and the nonce is words 4-5"""
        key = struct.pack(">8I", 1, 2, 3, 4, 5, 6, 7, 8)

        aes_key, counter = split_file_key(key)

        assert aes_key == struct.pack(">4I", 1 ^ 5, 2 ^ 6, 3 ^ 7, 4 ^ 8)
        assert counter == struct.pack(">2I", 5, 6) + b"\x00" * 8

    def test_decrypt_attributes(self):
        """Test that an encrypted attribute block round-trips to its JSON"""
        key = os.urandom(16)

        attributes = decrypt_attributes(encrypt_attributes({"n": "Fotos é"}, key), key)

        assert attributes == {"n": "Fotos é"}

    def test_decrypt_attributes_with_wrong_key(self):
        """Test that attributes decrypted with the wrong key are rejected"""
        encrypted = encrypt_attributes({"n": "x"}, os.urandom(16))

        with pytest.raises(SourceError):
            decrypt_attributes(encrypted, os.urandom(16))


class TestErrors:
    """Test API error classification"""

    @pytest.mark.parametrize("code", [-4, -6])
    def test_throttle_codes_are_rate_limits(self, code):
        """Test that quota and connection-limit codes become rate-limit errors"""
        error = api_error(code)

        assert isinstance(error, RateLimitedError)
        assert is_rate_limit_error(error)

    def test_other_codes_are_source_errors(self):
        """Test that other negative codes are plain source errors"""
        error = api_error(-9)

        assert type(error) is SourceError
        assert "ENOENT" in str(error)
        assert not is_rate_limit_error(error)

    def test_unknown_code(self):
        """Test that unknown codes still produce a message"""
        assert "-99" in str(api_error(-99))


class TestOpenFolder:
    """Test folder listing and decryption"""

    @pytest.mark.asyncio
    async def test_open_folder_lists_files(self):
        """Test that file nodes are decrypted and the root folder name is found"""
        master_key = os.urandom(16)
        nodes = [
            folder_node("root", "owner", "Holiday", master_key),
            folder_node("sub", "root", "Day 1", master_key),
            file_node("f1", "root", "beach.jpg", 1024, master_key),
            file_node("f2", "sub", "sunset.jpg", 2048, master_key),
        ]
        source = MegaSource()

        with patch.object(source, "api_request", AsyncMock(return_value={"f": nodes})) as api_request:
            folder = await source.open_folder("root", b64(master_key))

        api_request.assert_awaited_once_with({"a": "f", "c": 1, "ca": 1, "r": 1}, "root")
        assert folder.name == "Holiday"
        assert {f.node_id: f.name for f in folder.files} == {"f1": "beach.jpg", "f2": "sunset.jpg"}
        assert folder.file_map()["f2"].size == 2048
        assert folder.file_map()["f1"].timestamp == 1700000000

    @pytest.mark.asyncio
    async def test_undecryptable_nodes_are_skipped(self):
        """Test that a node with a broken key does not fail the whole listing"""
        master_key = os.urandom(16)
        broken = file_node("bad", "root", "bad.bin", 1, master_key)
        broken["k"] = "root:"
        nodes = [folder_node("root", "owner", "Holiday", master_key), broken, file_node("f1", "root", "a.txt", 3, master_key)]
        source = MegaSource()

        with patch.object(source, "api_request", AsyncMock(return_value={"f": nodes})):
            folder = await source.open_folder("root", b64(master_key))

        assert [f.node_id for f in folder.files] == ["f1"]

    @pytest.mark.asyncio
    async def test_empty_listing(self):
        """Test that an empty listing is reported as unavailable"""
        source = MegaSource()

        with patch.object(source, "api_request", AsyncMock(return_value={"f": []})):
            with pytest.raises(SourceError, match="empty or unavailable"):
                await source.open_folder("root", b64(os.urandom(16)))

    @pytest.mark.asyncio
    async def test_invalid_key_length(self):
        """Test that a key of the wrong size is rejected before any request"""
        source = MegaSource()

        with patch.object(source, "api_request", AsyncMock()) as api_request:
            with pytest.raises(SourceError, match="key length"):
                await source.open_folder("root", b64(b"short"))

        api_request.assert_not_awaited()


class TestSanitize:
    """Test folder link masking for logs"""

    def test_masks_key(self):
        """Test that the key after '#' is hidden"""
        assert sanitize_folder_url("https://mega.nz/folder/abc#secret") == "https://mega.nz/folder/abc#***"

    def test_masks_legacy_key(self):
        """Test that the key of a legacy link is hidden but its id kept"""
        assert sanitize_folder_url("https://mega.nz/#F!abc!secret") == "https://mega.nz/#F!abc!***"

    def test_url_without_key(self):
        """Test that links without a fragment are unchanged"""
        assert sanitize_folder_url("https://mega.nz/folder/abc") == "https://mega.nz/folder/abc"
