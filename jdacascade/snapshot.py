#
# snapshot.py
#   Binary snapshot of the training data.
#
#   File layout, little endian:
#     magic "JDADATA\0", version (uint32)
#     positive pool, then negative pool, each:
#       is_pos (uint8), landmark_n (int32), count (int32)
#       count samples:
#         image      original, half and quarter scale, each
#                    height, width, channels (int32), ndim (uint8),
#                    dtype (uint8 length + ascii), raw pixels
#         gt shape   marker (uint8), landmark_n*2 float64 if marker is 1
#         current shape  landmark_n*2 float64
#         score, last score, weight (float64)
#         shape mask (int32)
#       mean shape   marker (uint8), landmark_n*2 float64 if marker is 1
#       is_sorted (uint8)
#
# Author : Donny
#

import os
import struct
import logging

import numpy as np

from .io_utils import ensure_dir

LOGGER = logging.getLogger("jdacascade.snapshot")

MAGIC = b"JDADATA\0"
VERSION = 2


class SnapshotError(ValueError):
    """A snapshot file is malformed or truncated."""


def _writeShape(fh, shape, landmark_n):
    data = np.asarray(shape, dtype="<f8").reshape(landmark_n * 2)
    fh.write(data.tobytes())


def _writeImage(fh, img):
    img = np.ascontiguousarray(img)
    assert img.ndim in (2, 3), "Images are [height, width] or [height, width, channels]."
    h, w = img.shape[:2]
    c = img.shape[2] if img.ndim == 3 else 1
    dtype = img.dtype.str.encode("ascii")
    fh.write(struct.pack("<iiiB", h, w, c, img.ndim))
    fh.write(struct.pack("<B", len(dtype)))
    fh.write(dtype)
    fh.write(img.tobytes())


def _writePool(fh, dataset):
    landmark_n = dataset.config.landmark_n
    fh.write(struct.pack("<Bii", int(dataset.is_pos), landmark_n, dataset.size))
    for i in range(dataset.size):
        for img in dataset.pyramid(i):
            _writeImage(fh, img)
        if dataset.is_pos:
            fh.write(struct.pack("<B", 1))
            _writeShape(fh, dataset.gt_shapes[i], landmark_n)
        else:
            fh.write(struct.pack("<B", 0))
        _writeShape(fh, dataset.current_shapes[i], landmark_n)
        fh.write(struct.pack("<ddd", dataset.scores[i], dataset.last_scores[i], dataset.weights[i]))
        fh.write(struct.pack("<i", int(dataset.shape_mask[i])))

    if dataset.mean_shape is not None:
        fh.write(struct.pack("<B", 1))
        _writeShape(fh, dataset.mean_shape, landmark_n)
    else:
        fh.write(struct.pack("<B", 0))
    fh.write(struct.pack("<B", int(dataset.is_sorted)))


def writeSnapshot(filename, pos, neg):
    """Write both datasets to `filename`.

    The file is written next to its destination and moved into place, so an
    interrupted snapshot never replaces a good one. A failed write leaves
    nothing behind.
    """
    ensure_dir(os.path.dirname(filename))
    tmpname = filename + ".tmp"
    try:
        with open(tmpname, "wb") as fh:
            fh.write(MAGIC)
            fh.write(struct.pack("<I", VERSION))
            _writePool(fh, pos)
            _writePool(fh, neg)
        os.replace(tmpname, filename)
    except BaseException:
        if os.path.exists(tmpname):
            os.remove(tmpname)
        raise


class _Reader:
    def __init__(self, buf):
        self.buf = buf
        self.offset = 0

    def read(self, n):
        if n < 0 or self.offset + n > len(self.buf):
            raise SnapshotError("Snapshot truncated at byte %d" % self.offset)
        data = self.buf[self.offset:self.offset + n]
        self.offset += n
        return data

    def unpack(self, fmt):
        return struct.unpack(fmt, self.read(struct.calcsize(fmt)))

    def shape(self, landmark_n):
        data = self.read(landmark_n * 2 * 8)
        return np.frombuffer(data, dtype="<f8").astype(np.float64).reshape(landmark_n, 2)

    def image(self):
        h, w, c, ndim = self.unpack("<iiiB")
        if h < 0 or w < 0 or c < 1 or ndim not in (2, 3) or (ndim == 2 and c != 1):
            raise SnapshotError("Bad image header (%d, %d, %d, %d)" % (h, w, c, ndim))
        dtype_len, = self.unpack("<B")
        try:
            dtype = np.dtype(self.read(dtype_len).decode("ascii"))
        except (TypeError, UnicodeDecodeError) as e:
            raise SnapshotError("Bad image dtype: %s" % e)
        if dtype.hasobject or dtype.itemsize == 0:
            raise SnapshotError("Bad image dtype %s" % dtype)
        data = self.read(h * w * c * dtype.itemsize)
        img = np.frombuffer(data, dtype=dtype)
        if ndim == 3:
            return img.reshape(h, w, c).copy()
        return img.reshape(h, w).copy()


def _readPool(reader, landmark_n):
    is_pos, pool_landmark_n, count = reader.unpack("<Bii")
    if pool_landmark_n != landmark_n:
        raise SnapshotError("Snapshot has %d landmarks, expected %d" % (pool_landmark_n, landmark_n))
    if count < 0:
        raise SnapshotError("Negative sample count %d" % count)

    imgs, imgs_half, imgs_quarter = [], [], []
    gt_shapes = np.zeros((count, landmark_n, 2))
    current_shapes = np.zeros((count, landmark_n, 2))
    scores = np.zeros(count)
    last_scores = np.zeros(count)
    weights = np.zeros(count)
    shape_mask = np.zeros(count, dtype=np.int32)

    for i in range(count):
        imgs.append(reader.image())
        imgs_half.append(reader.image())
        imgs_quarter.append(reader.image())
        marker, = reader.unpack("<B")
        if marker == 1:
            gt_shapes[i] = reader.shape(landmark_n)
        elif marker != 0:
            raise SnapshotError("Bad gt shape marker %d" % marker)
        current_shapes[i] = reader.shape(landmark_n)
        scores[i], last_scores[i], weights[i] = reader.unpack("<ddd")
        shape_mask[i], = reader.unpack("<i")

    marker, = reader.unpack("<B")
    mean_shape = reader.shape(landmark_n) if marker == 1 else None
    is_sorted, = reader.unpack("<B")

    return {
        "is_pos": bool(is_pos),
        "imgs": imgs,
        "imgs_half": imgs_half,
        "imgs_quarter": imgs_quarter,
        "gt_shapes": gt_shapes,
        "shape_mask": shape_mask,
        "current_shapes": current_shapes,
        "scores": scores,
        "last_scores": last_scores,
        "weights": weights,
        "mean_shape": mean_shape,
        "is_sorted": bool(is_sorted),
    }


def readSnapshot(filename, landmark_n):
    """Read both datasets from `filename`.

    Returns
    -------
    pos, neg : dict
        Fields of the positive and the negative dataset.
    """
    with open(filename, "rb") as fh:
        reader = _Reader(fh.read())

    if reader.read(len(MAGIC)) != MAGIC:
        raise SnapshotError("%s is not a training data snapshot" % filename)
    version, = reader.unpack("<I")
    if version != VERSION:
        raise SnapshotError("Unsupported snapshot version %d" % version)

    pos = _readPool(reader, landmark_n)
    neg = _readPool(reader, landmark_n)
    if not pos["is_pos"] or neg["is_pos"]:
        raise SnapshotError("Snapshot pools are out of order")
    if reader.offset != len(reader.buf):
        raise SnapshotError("%d trailing bytes in snapshot" % (len(reader.buf) - reader.offset))
    LOGGER.debug("Read snapshot %s, %d bytes", filename, reader.offset)
    return pos, neg
