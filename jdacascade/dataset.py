#
# dataset.py
#   Positive / negative training data of the joint cascade.
#
# Author : Donny
#

import os
import math
import logging
import concurrent.futures as cf

import cv2
import numpy as np
from scipy import ndimage
from sklearn.utils import shuffle as skshuffle

from .config import Config
from .feature import imagePyramid
from .io_utils import ensure_dir, read_path_list
from .neggenerator import NegGenerator
from .shape import randomShape, randomShapes

LOGGER = logging.getLogger("jdacascade.dataset")


class DataSet:
    """Positive or negative training data.

    Every per-sample field is an array index-aligned with `imgs`, so index
    `i` refers to the same sample everywhere; fields are only ever added,
    removed or exchanged together. Some operations are only valid on the
    positive data and some only on the negative data.

    Faces without a ground truth shape are kept with `shape_mask = -1`;
    negative samples always have `shape_mask = -1`.

    Parameters
    ----------
    is_pos : bool
        Whether this is the positive dataset.
    config : Config, optional
    """

    def __init__(self, is_pos, config=None):
        self.is_pos = bool(is_pos)
        self.config = config if config is not None else Config()

        # generator for more negative samples
        self.neg_generator = NegGenerator(self.config)

        self.mean_shape = None
        self.clear()

    def clear(self):
        """Drop every sample."""
        landmark_n = self.config.landmark_n
        # face / non-face images
        self.imgs = []
        # the same images at half and quarter scale
        self.imgs_half = []
        self.imgs_quarter = []
        # ground truth shapes, only meaningful for positive samples
        self.gt_shapes = np.zeros((0, landmark_n, 2))
        # 1 for having a gt shape, -1 for not
        self.shape_mask = np.zeros(0, dtype=np.int32)
        self.current_shapes = np.zeros((0, landmark_n, 2))
        # scores, `f_i`
        self.scores = np.zeros(0)
        self.last_scores = np.zeros(0)
        # weights, `w_i`
        self.weights = np.zeros(0)
        self.is_sorted = True
        self.size = 0

    def __len__(self):
        return self.size

    def __str__(self):
        return "DataSet(is_pos=%s, size=%d, is_sorted=%s)" % (
            self.is_pos, self.size, self.is_sorted)

    @property
    def y(self):
        return 1.0 if self.is_pos else -1.0

    def _checkSorted(self):
        self.is_sorted = bool(np.all(np.diff(self.scores) <= 0))
        return self.is_sorted

    def append(self, imgs, gt_shapes, shape_mask, current_shapes, scores):
        """Append samples, all fields at once.

        Last scores start equal to scores and weights follow `w_i = e^{-y_i*f_i}`.
        Half and quarter scale copies of the images are built here.
        """
        n = len(imgs)
        landmark_n = self.config.landmark_n
        gt_shapes = np.asarray(gt_shapes, dtype=np.float64).reshape(n, landmark_n, 2)
        shape_mask = np.asarray(shape_mask, dtype=np.int32).reshape(n)
        current_shapes = np.asarray(current_shapes, dtype=np.float64).reshape(n, landmark_n, 2)
        scores = np.asarray(scores, dtype=np.float64).reshape(n)
        if not self.is_pos:
            assert np.all(shape_mask < 0), "Negative samples have no gt shape."

        pyramids = [imagePyramid(img) for img in imgs]
        self.imgs = self.imgs + [p[0] for p in pyramids]
        self.imgs_half = self.imgs_half + [p[1] for p in pyramids]
        self.imgs_quarter = self.imgs_quarter + [p[2] for p in pyramids]
        self.gt_shapes = np.concatenate((self.gt_shapes, gt_shapes))
        self.shape_mask = np.concatenate((self.shape_mask, shape_mask))
        self.current_shapes = np.concatenate((self.current_shapes, current_shapes))
        self.scores = np.concatenate((self.scores, scores))
        self.last_scores = np.concatenate((self.last_scores, scores))
        self.weights = np.concatenate((self.weights, np.exp(-self.y * scores)))
        self.size = len(self.imgs)
        self._checkSorted()

    def _truncate(self, size):
        self.imgs = self.imgs[:size]
        self.imgs_half = self.imgs_half[:size]
        self.imgs_quarter = self.imgs_quarter[:size]
        self.gt_shapes = self.gt_shapes[:size]
        self.shape_mask = self.shape_mask[:size]
        self.current_shapes = self.current_shapes[:size]
        self.scores = self.scores[:size]
        self.last_scores = self.last_scores[:size]
        self.weights = self.weights[:size]
        self.size = size

    def pyramid(self, i):
        """(original, half, quarter) images of sample `i`."""
        return self.imgs[i], self.imgs_half[i], self.imgs_quarter[i]

    # Loading

    def _loadImage(self, path):
        img = cv2.imread(path, cv2.IMREAD_GRAYSCALE)
        if img is None:
            raise IOError("Can not open image %s" % path)
        return img

    def _resizePatch(self, patch):
        size = self.config.img_o_size
        h, w = patch.shape
        if (h, w) == (size, size):
            return patch.copy()
        return ndimage.zoom(patch, (size / h, size / w), order=1)

    def loadPositiveDataSet(self, positive):
        """Load positive dataset.

        Every line of the text file is a face,
        `image_path x y w h x1 y1 x2 y2 ... xn yn`. The face box is cropped
        and resized to the patch size, landmarks are mapped into the patch.
        Negative landmarks mark a face without gt shape.

        Parameters
        ----------
        positive : str
            A text file path.
        """
        assert self.is_pos, "Only positive dataset loads faces."
        size = self.config.img_o_size
        landmark_n = self.config.landmark_n
        base = os.path.dirname(os.path.abspath(positive))

        imgs, gt_shapes, shape_mask = [], [], []
        with open(positive, "r", encoding="utf-8") as fh:
            for lineno, line in enumerate(fh, 1):
                parts = line.split()
                if not parts:
                    continue
                assert len(parts) == 5 + 2 * landmark_n, \
                       "%s:%d expects a path, a box and %d landmarks." % (positive, lineno, landmark_n)
                path = parts[0] if os.path.isabs(parts[0]) else os.path.join(base, parts[0])
                x, y, w, h = [int(round(float(v))) for v in parts[1:5]]
                landmarks = np.array(parts[5:], dtype=np.float64).reshape(landmark_n, 2)

                img = self._loadImage(path)
                H, W = img.shape
                x0, y0 = max(x, 0), max(y, 0)
                x1, y1 = min(x + w, W), min(y + h, H)
                assert x1 > x0 and y1 > y0, "%s:%d face box is outside the image." % (positive, lineno)
                imgs.append(self._resizePatch(img[y0:y1, x0:x1]))

                if np.any(landmarks < 0):
                    gt_shapes.append(landmarks)
                    shape_mask.append(-1)
                else:
                    gt_shapes.append((landmarks - [x0, y0]) * [size / (x1 - x0), size / (y1 - y0)])
                    shape_mask.append(1)

        n = len(imgs)
        self.clear()
        self.append(imgs, gt_shapes, shape_mask, np.zeros((n, landmark_n, 2)), np.zeros(n))
        LOGGER.info("Loaded %d faces, %d with gt shape", n, int(np.sum(self.shape_mask > 0)))

    def loadNegativeDataSet(self, negative):
        """Load negative dataset.

        Each line of a negative list holds another text file with the real
        negative patch paths, so groups can be added without touching the
        others. Loaded patches form the hard negative pool of the generator.

        Parameters
        ----------
        negative : list of str
            Negative text lists.
        """
        assert not self.is_pos, "Only negative dataset loads non-faces."
        if isinstance(negative, str):
            negative = [negative]
        hds = []
        for path in negative:
            for img_path in read_path_list(path):
                hds.append(self._resizePatch(self._loadImage(img_path)))
        if hds:
            hds = skshuffle(hds, random_state=self.config.random_state)
        self.neg_generator.addHardNegatives(hds)
        LOGGER.info("Loaded %d negative patches into the hard negative pool", len(hds))

    @staticmethod
    def loadDataSet(pos, neg, config=None):
        """Load positive and negative dataset together.

        The mean shape of the positive dataset is shared with the negative
        dataset, and current shapes of faces start as random perturbations
        of it.
        """
        config = config if config is not None else pos.config
        pos.loadPositiveDataSet(config.face_txt)
        if config.nega_txt:
            neg.loadNegativeDataSet(config.nega_txt)
        if config.bg_txt:
            neg.neg_generator.load(config.bg_txt)

        mean_shape = pos.calcMeanShape()
        neg.mean_shape = mean_shape
        pos.current_shapes = randomShapes(mean_shape, pos.size, config, config.random_state)
        pos.updateWeights()

    # Features and shapes

    def calcFeatureValues(self, feature_pool, idx, max_parallel_threads=None):
        """Calculate feature values from `feature_pool` with `idx`.

        Features are split into blocks evaluated in parallel; samples are
        only read.

        Parameters
        ----------
        feature_pool : list of Feature
        idx : array-like of int
            Indices of the dataset to calculate feature values on.

        Returns
        -------
        fea : np.array of shape = [n_features, n_idx]
            `fea[i, j] = f_i(data_j)`
        """
        idx = np.asarray(idx, dtype=np.int64)
        n_features = len(feature_pool)
        fea = np.zeros((n_features, len(idx)), dtype=np.int32)
        if n_features == 0 or len(idx) == 0:
            return fea

        if max_parallel_threads is None:
            max_parallel_threads = self.config.thread_n
        max_parallel_threads = max(1, min(int(max_parallel_threads), n_features))

        def _parallel_calc(range_):
            for i in range(range_[0], range_[1]):
                feature = feature_pool[i]
                for j, k in enumerate(idx):
                    fea[i, j] = feature.evaluate(self.pyramid(k), self.current_shapes[k])

        blocksize = math.ceil(n_features / max_parallel_threads)
        ranges = []
        for tid in range(max_parallel_threads):
            blockbegin = blocksize * tid
            if blockbegin >= n_features: break
            blockend = min(blocksize * (tid + 1), n_features)
            ranges.append((blockbegin, blockend))

        with cf.ThreadPoolExecutor(max_workers=len(ranges)) as executor:
            # consume the results so worker errors are raised here
            list(executor.map(_parallel_calc, ranges))
        return fea

    def calcShapeResidual(self, idx, landmark_id=None):
        """Calculate shape residual `gt_shape - current_shape` over positive dataset.

        Parameters
        ----------
        idx : array-like of int
            Indices of samples with gt shape.
        landmark_id : int, optional
            Only the residual of this landmark.

        Returns
        -------
        residual : np.array of shape = [n_idx, 2 * landmark_n] or [n_idx, 2]
        """
        assert self.is_pos, "Shape residual is only defined on positive dataset."
        idx = np.asarray(idx, dtype=np.int64)
        assert np.all(self.shape_mask[idx] > 0), "Every sample needs a gt shape."
        residual = self.gt_shapes[idx] - self.current_shapes[idx]
        if landmark_id is not None:
            return residual[:, landmark_id, :]
        return residual.reshape(len(idx), -1)

    def hasGtShape(self, index):
        assert self.is_pos, "Only positive dataset has gt shapes."
        return bool(self.shape_mask[index] > 0)

    def calcMeanShape(self):
        """Mean shape over the gt shapes of the positive dataset.

        Faces without gt shape are left out of the average.
        """
        assert self.is_pos, "Mean shape is computed on positive dataset."
        selector = self.shape_mask > 0
        if not np.any(selector):
            LOGGER.warning("No face has a gt shape, the mean shape is all zeros")
            self.mean_shape = np.zeros((self.config.landmark_n, 2))
        else:
            self.mean_shape = self.gt_shapes[selector].mean(axis=0)
        return self.mean_shape

    @staticmethod
    def randomShape(mean_shape, config=None, random_state=None):
        """A random perturbation of `mean_shape`."""
        return randomShape(mean_shape, config if config is not None else Config(), random_state)

    @staticmethod
    def randomShapes(mean_shape, n, config=None, random_state=None):
        return randomShapes(mean_shape, n, config if config is not None else Config(), random_state)

    # Boosting

    def updateWeights(self):
        """Update weights, `w_i = e^{-y_i*f_i}`."""
        self.weights = np.exp(-self.y * self.scores)

    @staticmethod
    def updateJointWeights(pos, neg):
        """Update weights of both datasets, normalized over all samples."""
        pos.updateWeights()
        neg.updateWeights()
        total = pos.weights.sum() + neg.weights.sum()
        if total > 0:
            pos.weights /= total
            neg.weights /= total

    def updateScores(self, cart):
        """Update scores by cart, `f_i = f_i + Cart(x, s)`."""
        self.last_scores = self.scores.copy()
        for i in range(self.size):
            self.scores[i] += cart.score(self.pyramid(i), self.current_shapes[i])
        self._checkSorted()

    def resetScores(self):
        """Undo the last `updateScores`."""
        self.scores = self.last_scores.copy()
        self._checkSorted()

    @staticmethod
    def calcMeanAndStd(pos, neg):
        """Mean and population standard deviation of the scores of both datasets.

        Returns
        -------
        mean, std : float
        """
        scores = np.concatenate((pos.scores, neg.scores))
        if len(scores) == 0:
            return 0.0, 0.0
        return float(np.mean(scores)), float(np.std(scores))

    def applyMeanAndStd(self, mean, std):
        """`f_i = (f_i - mean) / std`, a zero std only shifts the scores."""
        self.scores = self.scores - mean
        if std > 0:
            self.scores /= std
        self._checkSorted()

    # Thresholds and removal

    def calcThresholdByRate(self, rate):
        """Threshold with `sum(scores < th) / N` as close as possible to `rate`.

        Ties of `rate * N` halfway between two counts round up.
        """
        if self.size == 0:
            return 0.0
        scores = np.sort(self.scores)
        offset = int(math.floor(rate * self.size + 0.5))
        offset = min(max(offset, 0), self.size - 1)
        return float(scores[offset])

    def calcThresholdByNumber(self, remove):
        """Threshold removing the `remove` lowest scoring samples."""
        if self.size == 0:
            return 0.0
        scores = np.sort(self.scores)
        if remove <= 0:
            return float(scores[0])
        if remove >= self.size:
            return float(np.nextafter(scores[-1], np.inf))
        return float(scores[remove])

    def preRemove(self, th):
        """Number of samples `remove(th)` would drop."""
        return int(np.sum(self.scores < th))

    def remove(self, th):
        """Remove samples with `score < th`.

        Kept samples are partitioned to the front in place, their order is
        not preserved unless the dataset is sorted.
        """
        left, right = 0, self.size - 1
        while True:
            while left <= right and self.scores[left] >= th:
                left += 1
            while left <= right and self.scores[right] < th:
                right -= 1
            if left >= right:
                break
            self.swap(left, right)
        removed = self.size - left
        self._truncate(left)
        self._checkSorted()
        LOGGER.debug("Removed %d samples with score < %f, %d left", removed, th, self.size)

    def swap(self, i, j):
        """Exchange every field of sample `i` and sample `j`."""
        if i == j:
            return
        for imgs in (self.imgs, self.imgs_half, self.imgs_quarter):
            imgs[i], imgs[j] = imgs[j], imgs[i]
        for field in (self.gt_shapes, self.shape_mask, self.current_shapes,
                      self.scores, self.last_scores, self.weights):
            field[[i, j]] = field[[j, i]]

    def qsort(self):
        """Quick sort by scores, descending."""
        self._qsort(0, self.size - 1)
        self.is_sorted = True

    def _qsort(self, left, right):
        # recurse into the smaller part, loop on the larger one
        while left < right:
            mid = (left + right) // 2
            # median of three to the middle
            if self.scores[left] < self.scores[mid]:
                self.swap(left, mid)
            if self.scores[left] < self.scores[right]:
                self.swap(left, right)
            if self.scores[mid] < self.scores[right]:
                self.swap(mid, right)
            pivot = self.scores[mid]

            i, j = left, right
            while i <= j:
                while self.scores[i] > pivot:
                    i += 1
                while self.scores[j] < pivot:
                    j -= 1
                if i <= j:
                    self.swap(i, j)
                    i += 1
                    j -= 1

            if j - left < right - i:
                self._qsort(left, j)
                left = i
            else:
                self._qsort(i, right)
                right = j

    # Negative mining

    def moreNegSamples(self, pos_size, rate, joincascador):
        """More negative samples if needed, only for negative dataset.

        Mining may come back with fewer samples than the deficit, check
        `size` afterwards.

        Parameters
        ----------
        pos_size : int
            Positive dataset size, reference for generating.
        rate : float
            N(negative) / N(positive).
        joincascador : JoinCascador
            The cascade in training.

        Returns
        -------
        real_size : int
            Number of samples added.
        """
        assert not self.is_pos, "Only negative dataset mines more samples."
        size = int(pos_size * rate) - self.size
        if size <= 0:
            return 0

        LOGGER.info("Negative samples %d, need %d more", self.size, size)
        imgs, scores, shapes, real_size = self.neg_generator.generate(joincascador, size)
        if real_size == 0:
            return 0

        landmark_n = self.config.landmark_n
        self.append(imgs, np.zeros((real_size, landmark_n, 2)),
                    -np.ones(real_size, dtype=np.int32), shapes, scores)
        LOGGER.info("Negative samples %d after mining, %d background images used",
                    self.size, self.neg_generator.reportBgImageUsed())
        return real_size

    # Persistence

    @staticmethod
    def snapshot(pos, neg, filename=None):
        """Snapshot both datasets into a binary file for `resume`."""
        from .snapshot import writeSnapshot
        filename = filename if filename is not None else pos.config.snapshot_path
        writeSnapshot(filename, pos, neg)
        LOGGER.info("Snapshot %d positive and %d negative samples to %s",
                    pos.size, neg.size, filename)

    @staticmethod
    def resume(filename, pos, neg):
        """Resume both datasets from a binary file written by `snapshot`.

        Nothing is touched unless the whole file loads.
        """
        from .snapshot import readSnapshot
        pos_data, neg_data = readSnapshot(filename, pos.config.landmark_n)
        pos._replace(pos_data)
        neg._replace(neg_data)
        LOGGER.info("Resumed %d positive and %d negative samples from %s",
                    pos.size, neg.size, filename)
        return pos, neg

    def _replace(self, data):
        assert data["is_pos"] == self.is_pos, "Dataset kind mismatch."
        self.imgs = data["imgs"]
        self.imgs_half = data["imgs_half"]
        self.imgs_quarter = data["imgs_quarter"]
        self.gt_shapes = data["gt_shapes"]
        self.shape_mask = data["shape_mask"]
        self.current_shapes = data["current_shapes"]
        self.scores = data["scores"]
        self.last_scores = data["last_scores"]
        self.weights = data["weights"]
        self.mean_shape = data["mean_shape"]
        self.size = len(self.imgs)
        if self._checkSorted() != data["is_sorted"]:
            LOGGER.warning("Stored sorted flag %s does not match the scores", data["is_sorted"])

    def dump(self, dirname):
        """Dump images to file system."""
        ensure_dir(dirname)
        for i, img in enumerate(self.imgs):
            cv2.imwrite(os.path.join(dirname, "%06d.png" % i), img)
        LOGGER.info("Dumped %d images to %s", self.size, dirname)
