# Library of functions shared across Python scripts

"""
Copyright © 2025 Merck & Co., Inc., Rahway, NJ, USA and its affiliates. All rights reserved.
This file is part of GEXValidate.

This source code is licensed under the MIT License found in the
LICENSE file in the root directory of this source tree.
"""

import collections.abc
import functools
import logging
import os
import typing
import uuid

import numpy as np
import xopen

NUCLEOTIDES = "ACGT"
_NUCLEOTIDE_CODES = {base: code for code, base in enumerate(NUCLEOTIDES)}


class EncodingError(ValueError):
    pass


class DecodingError(ValueError):
    pass


class GenotypeTableError(Exception):
    pass


class ExpansionError(GenotypeTableError):
    pass


class ArchiveFormatError(Exception):
    pass


class MissingTargetGeneError(KeyError):
    pass


def wrap_exception(
    catch_exc: type[BaseException] | tuple[type[BaseException]],
    wrap_exc: type[BaseException],
    *exc_args,
    **exc_kwargs,
):
    def wrapper(func):
        @functools.wraps(func)
        def inner(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except catch_exc as e:
                raise wrap_exc(*exc_args, **exc_kwargs) from e

        return inner

    return wrapper


def logs_runtime(func):
    """
    Logs start and finish times for the wrapped process.
    Will create a logger with a unique ID for each call to the wrapped function
    Pass a logger via the `logger` kwarg to the wrapped function to use that instead
    """
    logger = logging.getLogger(f"{func.__name__}:{uuid.uuid4().int % 1_000_000_000}")

    @functools.wraps(func)
    def inner(*args, **kwargs):
        my_logger: logging.Logger = kwargs.pop("logger", logger)
        my_logger.info("Begin")
        ret = func(*args, **kwargs)
        my_logger.info("Finish")
        return ret

    return inner


def encode_umi(seq: str) -> int:
    """
    Packs a nucleotide sequence into an integer, two bits per base (A=00, C=01, G=10, T=11),
    first base in the most significant position.
    :param seq: Sequence drawn from {A,C,G,T}
    :return: Unsigned integer code
    :raises EncodingError: if seq contains any other character
    """
    value = 0
    for base in seq:
        try:
            code = _NUCLEOTIDE_CODES[base]
        except KeyError:
            raise EncodingError(f"invalid base {base!r} in UMI {seq!r}") from None
        value = (value << 2) | code
    return value


def decode_umi(value: int, length: int) -> str:
    """
    Inverse of encode_umi. The value is left-padded with A's (zero bits) to the declared length.
    :param value: 2-bit encoded sequence
    :param length: Number of bases in the decoded sequence
    :return: Nucleotide sequence of the given length
    :raises DecodingError: if value does not fit in 2*length bits
    """
    value = int(value)
    if value < 0 or value.bit_length() > 2 * length:
        raise DecodingError(f"value {value} does not fit in a UMI of length {length}")
    return "".join(
        NUCLEOTIDES[(value >> (2 * (length - i - 1))) & 3] for i in range(length)
    )


def decode_umis(values: collections.abc.Sequence[int], length: int) -> np.ndarray:
    """
    Vectorized decode_umi over a whole column of encoded UMIs
    :param values: Array-like of non-negative integers
    :param length: Number of bases per UMI
    :return: numpy array of str
    """
    values = np.asarray(values, dtype=np.uint64)
    if values.size == 0:
        return np.array([], dtype=f"<U{length}")
    if length < 32 and int(values.max()) >> (2 * length):
        bad = values[values >> np.uint64(2 * length) != 0][0]
        raise DecodingError(f"value {bad} does not fit in a UMI of length {length}")
    shifts = np.arange(2 * (length - 1), -1, -2, dtype=np.uint64)
    codes = (values[:, None] >> shifts[None, :]) & np.uint64(3)
    bases = np.array(list(NUCLEOTIDES))[codes.astype(np.intp)]
    return bases.view(f"<U{length}").ravel()


def strip_barcode_suffix(barcode: str, sep: str = "-") -> str:
    return barcode.split(sep, 1)[0]


def read_barcode_list(
    fname: str | bytes | os.PathLike | typing.TextIO, sep: str = "-"
) -> list[str]:
    """
    Reads a list of cell barcodes, one per line, optionally gzipped.
    Sample tags after `sep` (e.g. AAACCTGAGAAACCAT-1) are removed.

    Args:
        fname (str | bytes | os.PathLike | typing.TextIO): Filename or handle.
                If a path is passed, it will be opened read-only and closed after.
        sep (str): Separator introducing the suffix

    Returns:
        list[str]: unique barcodes in order of first appearance
    """
    needs_close = not hasattr(fname, "close")
    fh: typing.TextIO = xopen.xopen(fname) if needs_close else fname
    try:
        barcodes = (strip_barcode_suffix(line.strip(), sep) for line in fh)
        return list(dict.fromkeys(bc for bc in barcodes if bc))
    finally:
        if needs_close:
            fh.close()


def write_unless_exists(
    path: str | os.PathLike,
    writer: collections.abc.Callable[[str | os.PathLike], typing.Any],
    logger: logging.Logger | None = None,
) -> bool:
    """
    Calls writer(path) unless path already exists, in which case a warning is logged.
    :return: True if the file was written
    """
    logger = logger or logging.getLogger("write_unless_exists")
    if os.path.exists(path):
        logger.warning("%s already exists, not overwriting", path)
        return False
    writer(path)
    return True
