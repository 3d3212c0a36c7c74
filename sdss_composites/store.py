"""Compact binary store of SDSS spectra with an id-sorted index.

File layout (all fields big-endian):

    header   index_offset:int64  lite_flag:int64 (-1 lite, 1 full)
    record   length:int64  payload[length]
    index    index_size:int64  count:int32  count * (obj_id:int64, offset:int64)

A full payload is ``obj_id:int64 plate:int32 mjd:int32 fiber:int32 npix:int32``
followed by ``npix`` pixels of ``flux, loglam, ivar:f4 and_mask, or_mask:i4
wdisp, sky, model:f4``. A lite payload is ``obj_id:int64 npix:int32`` followed
by ``npix`` pixels of ``flux, loglam:f4``.

The index is written after all records, so the file is only readable once
``SpectrumStoreWriter.finish`` has back-patched the header.
"""

from __future__ import annotations

import logging
import os
import struct
from pathlib import Path
from typing import BinaryIO, Iterator, List, Optional, Tuple

import numpy as np

from sdss_composites.models import FullSpectrum, LiteSpectrum, Spectrum

logger = logging.getLogger(__name__)

LITE_FLAG = -1
FULL_FLAG = 1

DEFAULT_BUFFER_SIZE = 1 << 23  # 8 MiB

_LONG = struct.Struct(">q")
_HEADER = struct.Struct(">qq")
_COUNT = struct.Struct(">i")
_FULL_HEAD = struct.Struct(">qiiii")
_LITE_HEAD = struct.Struct(">qi")

LITE_PIXEL_DTYPE = np.dtype([("flux", ">f4"), ("loglam", ">f4")])
FULL_PIXEL_DTYPE = np.dtype(
    [
        ("flux", ">f4"),
        ("loglam", ">f4"),
        ("ivar", ">f4"),
        ("and_mask", ">i4"),
        ("or_mask", ">i4"),
        ("wdisp", ">f4"),
        ("sky", ">f4"),
        ("model", ">f4"),
    ]
)
INDEX_DTYPE = np.dtype([("obj_id", ">i8"), ("offset", ">i8")])

_ANCILLARY_FIELDS = ("ivar", "and_mask", "or_mask", "wdisp", "sky", "model")


class StoreFormatError(RuntimeError):
    """Raised when a spectrum store file is malformed or truncated."""

    def __init__(self, message: str, *, path: str | None = None, offset: int | None = None) -> None:
        super().__init__(message)
        self.path = path
        self.offset = offset


def encode_spectrum(spectrum: Spectrum, *, lite: bool) -> bytes:
    """Serialise one spectrum to a record payload (without the length prefix)."""

    n = spectrum.num_pixels
    if spectrum.loglam.size != n:
        raise ValueError(f"Spectrum {spectrum.obj_id}: flux/loglam length mismatch ({n} != {spectrum.loglam.size})")

    if lite:
        head = _LITE_HEAD.pack(spectrum.obj_id, n)
        pixels = np.empty(n, dtype=LITE_PIXEL_DTYPE)
    else:
        if not isinstance(spectrum, FullSpectrum):
            raise TypeError(f"Spectrum {spectrum.obj_id} is lite and cannot be written to a full store")
        head = _FULL_HEAD.pack(spectrum.obj_id, spectrum.plate, spectrum.mjd, spectrum.fiber, n)
        pixels = np.empty(n, dtype=FULL_PIXEL_DTYPE)
        for name in _ANCILLARY_FIELDS:
            pixels[name] = getattr(spectrum, name)

    pixels["flux"] = spectrum.flux
    pixels["loglam"] = spectrum.loglam
    return head + pixels.tobytes()


def decode_spectrum(payload: bytes | memoryview, *, lite: bool) -> Spectrum:
    """Deserialise a record payload produced by :func:`encode_spectrum`."""

    if lite:
        head_size, dtype = _LITE_HEAD.size, LITE_PIXEL_DTYPE
    else:
        head_size, dtype = _FULL_HEAD.size, FULL_PIXEL_DTYPE
    if len(payload) < head_size:
        raise StoreFormatError(f"Record too short: {len(payload)} bytes")

    if lite:
        obj_id, n = _LITE_HEAD.unpack_from(payload, 0)
    else:
        obj_id, plate, mjd, fiber, n = _FULL_HEAD.unpack_from(payload, 0)

    expected = head_size + n * dtype.itemsize
    if n < 0 or len(payload) != expected:
        raise StoreFormatError(f"Record length mismatch for object {obj_id}: expected={expected} got={len(payload)}")

    # astype copies out of the (reused) read window into native byte order.
    if n:
        pixels = np.frombuffer(payload, dtype=dtype, count=n, offset=head_size)
    else:
        pixels = np.zeros(0, dtype=dtype)
    flux = pixels["flux"].astype(np.float32)
    loglam = pixels["loglam"].astype(np.float32)
    if lite:
        return LiteSpectrum(obj_id=int(obj_id), flux=flux, loglam=loglam)

    return FullSpectrum(
        obj_id=int(obj_id),
        flux=flux,
        loglam=loglam,
        plate=int(plate),
        mjd=int(mjd),
        fiber=int(fiber),
        ivar=pixels["ivar"].astype(np.float32),
        and_mask=pixels["and_mask"].astype(np.int32),
        or_mask=pixels["or_mask"].astype(np.int32),
        wdisp=pixels["wdisp"].astype(np.float32),
        sky=pixels["sky"].astype(np.float32),
        model=pixels["model"].astype(np.float32),
    )


class SpectrumStoreWriter:
    """Append spectra to a new store file and write its index on ``finish``.

    The writer refuses to overwrite an existing file. Used as a context
    manager it calls ``finish`` on a clean exit; after an exception the file is
    closed without an index and is therefore unreadable.
    """

    def __init__(self, path: str | os.PathLike[str], *, lite: bool = False) -> None:
        self.path = Path(path)
        self.lite = lite
        self._fh: Optional[BinaryIO] = open(self.path, "xb")
        self._index: List[Tuple[int, int]] = []
        self._ids: set[int] = set()
        # Placeholder index offset, back-patched by finish().
        self._fh.write(_HEADER.pack(0, LITE_FLAG if lite else FULL_FLAG))
        logger.info("Creating spectrum store", extra={"path": str(self.path), "lite": lite})

    def __enter__(self) -> "SpectrumStoreWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[no-untyped-def]
        if exc_type is None:
            self.finish()
        else:
            self.close()

    def __len__(self) -> int:
        return len(self._index)

    def add(self, spectrum: Spectrum) -> None:
        if self._fh is None:
            raise ValueError("Spectrum store writer is closed")
        obj_id = int(spectrum.obj_id)
        if obj_id in self._ids:
            raise ValueError(f"Duplicate object id {obj_id}")

        payload = encode_spectrum(spectrum, lite=self.lite)
        offset = self._fh.tell()
        self._fh.write(_LONG.pack(len(payload)))
        self._fh.write(payload)
        self._index.append((obj_id, offset))
        self._ids.add(obj_id)

    def finish(self) -> int:
        """Write the index, back-patch the header and close the file.

        Returns the number of spectra written.
        """

        if self._fh is None:
            return len(self._index)

        index_offset = self._fh.tell()
        entries = np.array(self._index, dtype=INDEX_DTYPE)
        body = _COUNT.pack(len(self._index)) + entries.tobytes()
        self._fh.write(_LONG.pack(len(body)))
        self._fh.write(body)

        self._fh.seek(0)
        self._fh.write(_LONG.pack(index_offset))
        self.close()
        logger.info(
            "Spectrum store complete",
            extra={"path": str(self.path), "count": len(self._index), "index_offset": index_offset},
        )
        return len(self._index)

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None


class SpectrumStoreReader:
    """Read-only random access to a finished spectrum store.

    Records are served from a single in-memory window refilled from the file on
    a miss, which makes reading in ascending id order far cheaper than random
    seeks. ``buffer_size=0`` disables the window and reads every record
    directly.
    """

    def __init__(self, path: str | os.PathLike[str], *, buffer_size: int = DEFAULT_BUFFER_SIZE) -> None:
        self.path = Path(path)
        self._fh: Optional[BinaryIO] = open(self.path, "rb")
        self._window = bytearray(max(0, int(buffer_size)))
        self._window_start = -1
        self._window_len = 0
        self.window_refills = 0
        self.direct_reads = 0
        try:
            self._load_index()
        except Exception:
            self.close()
            raise
        logger.info(
            "Opened spectrum store",
            extra={"path": str(self.path), "count": len(self._ids), "lite": self.lite},
        )

    def __enter__(self) -> "SpectrumStoreReader":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[no-untyped-def]
        self.close()

    def __len__(self) -> int:
        return int(self._ids.size)

    def __contains__(self, obj_id: object) -> bool:
        try:
            return self._find(int(obj_id)) is not None  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return False

    def __iter__(self) -> Iterator[int]:
        return self.ids_in_order()

    @property
    def lite(self) -> bool:
        return self._lite

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None

    def _error(self, message: str, offset: int | None = None) -> StoreFormatError:
        return StoreFormatError(f"{self.path}: {message}", path=str(self.path), offset=offset)

    def _read_exact(self, size: int, offset: int) -> bytes:
        assert self._fh is not None
        self._fh.seek(offset)
        data = self._fh.read(size)
        if len(data) != size:
            raise self._error(f"Read underflow: wanted {size} bytes, got {len(data)}", offset)
        return data

    def _load_index(self) -> None:
        index_offset, flag = _HEADER.unpack(self._read_exact(_HEADER.size, 0))
        if flag not in (LITE_FLAG, FULL_FLAG):
            raise self._error(f"Unknown lite flag {flag}", 8)
        if index_offset < _HEADER.size:
            raise self._error(f"Invalid index offset {index_offset} (store not finished?)", 0)
        self._lite = flag == LITE_FLAG

        (index_size,) = _LONG.unpack(self._read_exact(_LONG.size, index_offset))
        if index_size < _COUNT.size:
            raise self._error(f"Index too short: {index_size} bytes", index_offset)
        body = self._read_exact(index_size, index_offset + _LONG.size)
        (count,) = _COUNT.unpack_from(body, 0)
        if count < 0 or index_size != _COUNT.size + count * INDEX_DTYPE.itemsize:
            raise self._error(f"Index length mismatch: size={index_size} entries={count}", index_offset)

        if count:
            entries = np.frombuffer(body, dtype=INDEX_DTYPE, count=count, offset=_COUNT.size)
        else:
            entries = np.zeros(0, dtype=INDEX_DTYPE)
        order = np.argsort(entries["obj_id"], kind="stable")
        self._ids = entries["obj_id"][order].astype(np.int64)
        self._offsets = entries["offset"][order].astype(np.int64)
        if count > 1 and np.any(np.diff(self._ids) == 0):
            raise self._error("Duplicate object ids in index", index_offset)

    def _find(self, obj_id: int) -> int | None:
        i = int(np.searchsorted(self._ids, obj_id))
        if i < self._ids.size and int(self._ids[i]) == obj_id:
            return int(self._offsets[i])
        return None

    def ids_in_order(self) -> Iterator[int]:
        """Yield every object id in ascending order."""

        for obj_id in self._ids:
            yield int(obj_id)

    def get(self, obj_id: int) -> Spectrum | None:
        """Return the spectrum for ``obj_id`` or None when it is not stored."""

        if self._fh is None:
            raise ValueError("Spectrum store reader is closed")
        offset = self._find(int(obj_id))
        if offset is None:
            return None

        payload = self._read_record(offset)
        try:
            return decode_spectrum(payload, lite=self._lite)
        except StoreFormatError as exc:
            raise self._error(str(exc), offset) from exc

    def _read_record(self, offset: int) -> bytes | memoryview:
        if not self._window:
            return self._read_direct(offset)

        rel = offset - self._window_start
        if self._window_start >= 0 and rel >= 0 and rel + _LONG.size <= self._window_len:
            (length,) = _LONG.unpack_from(self._window, rel)
            start = rel + _LONG.size
            if start + length <= self._window_len:
                return memoryview(self._window)[start : start + length]

        # Miss: refill the window starting at this record.
        assert self._fh is not None
        self._fh.seek(offset)
        self._window_len = self._fh.readinto(self._window) or 0
        self._window_start = offset
        self.window_refills += 1
        if self._window_len < _LONG.size:
            raise self._error("Read underflow at record length", offset)

        (length,) = _LONG.unpack_from(self._window, 0)
        if length < 0:
            raise self._error(f"Negative record length {length}", offset)
        if _LONG.size + length <= self._window_len:
            return memoryview(self._window)[_LONG.size : _LONG.size + length]
        if _LONG.size + length <= len(self._window):
            raise self._error(f"Record truncated: length={length}", offset)

        # Record larger than the window.
        return self._read_direct(offset)

    def _read_direct(self, offset: int) -> bytes:
        (length,) = _LONG.unpack(self._read_exact(_LONG.size, offset))
        if length < 0:
            raise self._error(f"Negative record length {length}", offset)
        self.direct_reads += 1
        return self._read_exact(length, offset + _LONG.size)
