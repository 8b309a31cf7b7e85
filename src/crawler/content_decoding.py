"""Incremental Content-Encoding decoders for the byte recorder.

Decoders are fed the entity bytes as they stream in so the content layer
and its digest never need a second pass over the capture.
"""

import zlib
from typing import Protocol

import brotli

_GZIP_WBITS = 16 + zlib.MAX_WBITS


class UnsupportedContentEncodingError(ValueError):
    """Content-Encoding names a coding we cannot undo."""

    def __init__(self, coding: str):
        super().__init__(f"unsupported content encoding: {coding}")
        self.coding = coding


class ContentDecodingError(Exception):
    """Entity bytes could not be decoded with the declared coding."""


class ContentDecoder(Protocol):
    def decompress(self, data: bytes) -> bytes: ...

    def flush(self) -> bytes: ...


class IdentityDecoder:
    def decompress(self, data: bytes) -> bytes:
        return data

    def flush(self) -> bytes:
        return b""


class GzipDecoder:
    """gzip / x-gzip, including concatenated members."""

    def __init__(self) -> None:
        self._obj = zlib.decompressobj(_GZIP_WBITS)

    def decompress(self, data: bytes) -> bytes:
        out = bytearray()
        while data:
            try:
                out += self._obj.decompress(data)
            except zlib.error as e:
                raise ContentDecodingError(str(e)) from e
            data = self._obj.unused_data
            if not data:
                break
            self._obj = zlib.decompressobj(_GZIP_WBITS)
        return bytes(out)

    def flush(self) -> bytes:
        try:
            return self._obj.flush()
        except zlib.error as e:
            raise ContentDecodingError(str(e)) from e


class DeflateDecoder:
    """deflate, accepting both zlib-wrapped and raw streams."""

    def __init__(self) -> None:
        self._obj = zlib.decompressobj()
        self._first_try = True
        self._buffered = b""

    def decompress(self, data: bytes) -> bytes:
        if not data:
            return data
        if not self._first_try:
            try:
                return self._obj.decompress(data)
            except zlib.error as e:
                raise ContentDecodingError(str(e)) from e

        self._buffered += data
        try:
            decompressed = self._obj.decompress(data)
        except zlib.error:
            # Not zlib-wrapped; replay what we have as a raw deflate stream
            self._first_try = False
            self._obj = zlib.decompressobj(-zlib.MAX_WBITS)
            buffered, self._buffered = self._buffered, b""
            return self.decompress(buffered)
        if decompressed:
            self._first_try = False
            self._buffered = b""
        return decompressed

    def flush(self) -> bytes:
        try:
            return self._obj.flush()
        except zlib.error as e:
            raise ContentDecodingError(str(e)) from e


class BrotliDecoder:
    def __init__(self) -> None:
        self._obj = brotli.Decompressor()

    def decompress(self, data: bytes) -> bytes:
        if not data:
            return data
        try:
            return self._obj.process(data)
        except brotli.error as e:
            raise ContentDecodingError(str(e)) from e

    def flush(self) -> bytes:
        return b""


class MultiDecoder:
    """Stacked codings such as "gzip, br", undone in reverse order of application."""

    def __init__(self, decoders: list[ContentDecoder]):
        self._decoders = list(reversed(decoders))

    def decompress(self, data: bytes) -> bytes:
        for decoder in self._decoders:
            data = decoder.decompress(data)
        return data

    def flush(self) -> bytes:
        data = b""
        for decoder in self._decoders:
            if data:
                data = decoder.decompress(data)
            data += decoder.flush()
        return data


_DECODERS: dict[str, type] = {
    "identity": IdentityDecoder,
    "gzip": GzipDecoder,
    "x-gzip": GzipDecoder,
    "deflate": DeflateDecoder,
    "br": BrotliDecoder,
}


def parse_content_codings(content_encoding: str) -> list[str]:
    return [token.strip().lower() for token in content_encoding.split(",") if token.strip()]


def get_decoder(content_encoding: str | None) -> ContentDecoder:
    """Build a decoder for a Content-Encoding header value.

    Raises:
        UnsupportedContentEncodingError: If any listed coding is unknown.
    """
    codings = parse_content_codings(content_encoding or "")
    if not codings:
        return IdentityDecoder()

    decoders: list[ContentDecoder] = []
    for coding in codings:
        decoder_cls = _DECODERS.get(coding)
        if decoder_cls is None:
            raise UnsupportedContentEncodingError(coding)
        decoders.append(decoder_cls())

    if len(decoders) == 1:
        return decoders[0]
    return MultiDecoder(decoders)
