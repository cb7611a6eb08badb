#
# neggenerator.py
#   Hard negative mining over background images.
#
# Author : Donny
#

import math
import logging
import threading
import concurrent.futures as cf

import cv2
import numpy as np
from scipy import ndimage
from sklearn.utils import check_random_state

from .config import Config
from .feature import imagePyramid
from .io_utils import read_path_list
from .shape import randomShape

LOGGER = logging.getLogger("jdacascade.neggenerator")


# Views of a background image swept one after another
TRANSFORMS = [
    lambda img: img,
    np.fliplr,
    lambda img: np.rot90(img, 1),
    lambda img: np.rot90(img, 2),
    lambda img: np.rot90(img, 3),
    np.flipud,
]


class State:
    """Mining cursor of one worker.

    Only the worker owning the state reads or writes it.

    Parameters
    ----------
    tid : int
        Worker id, also the first hard negative the worker draws.
    current_idx : int
        The first background image of the worker.
    bg_quota : int
        How many background images the worker may consume in this round.
    random_state : None, int or np.random.RandomState
        Source of the starting shapes of candidates.
    """

    def __init__(self, tid, current_idx, bg_quota, random_state=None):
        self.current_idx = current_idx
        self.current_hd_idx = tid
        self.factor = 1.0
        self.x, self.y = 0, 0
        self.win_size = 0
        self.transform_type = 0
        self.step = 1
        # Derive a fresh window plan from the next background on next pull
        self.reset = True
        # Decoded background and the transformed view being swept
        self.bg_img = None
        self.bg_view = None

        # pool index of the last patch handed out, None for background patches
        self.last_hd_idx = None
        # pool indices drawn but not used, they stay in the pool
        self.hd_kept = set()

        self.bg_left = bg_quota
        self.bg_done = 0
        self.rng = check_random_state(random_state)


class MiningStats:
    """Counters shared by the workers of one round, guarded by the write lock."""

    def __init__(self, size=0):
        self.size = size
        # background images consumed
        self.nega_n = 0
        # candidate patches examined
        self.patches_n = 0
        # carts evaluated
        self.carts_n = 0
        # mined / requested
        self.ratio = 0.0

    def __str__(self):
        carts_per_patch = self.carts_n / self.patches_n if self.patches_n else 0.0
        return ("MiningStats(size=%d, ratio=%f, nega_n=%d, "
                "patches_n=%d, carts_n=%d, carts_per_patch=%f)") % (
                self.size, self.ratio, self.nega_n,
                self.patches_n, self.carts_n, carts_per_patch)


class NegGenerator:
    """Negative training sample generator.

    Hard negatives are patches that get through every cart of the cascade in
    training. They are drawn from the hard negative pool `hds` first, then
    from a sliding-window sweep over the background images of `list`.

    Parameters
    ----------
    config : Config, optional
    """

    def __init__(self, config=None):
        self.config = config if config is not None else Config()

        # background image list
        self.list = []
        # hard negative pool, patches of (img_o_size x img_o_size)
        self.hds = []
        # thread mining status, one per worker of the current round
        self.states = []

        # first background of the next round
        self.bg_offset = 0
        # backgrounds consumed by finished rounds
        self.bg_used = 0

        self.stats = MiningStats()
        self._write_lock = threading.Lock()
        self._rng = check_random_state(self.config.random_state)

    def load(self, paths):
        """Load background image lists.

        Parameters
        ----------
        paths : str or list of str
            List files, see `io_utils.read_path_list`.
        """
        if isinstance(paths, str):
            paths = [paths]
        self.list = []
        for path in paths:
            self.list.extend(read_path_list(path))
        self.bg_offset = 0
        LOGGER.info("Loaded %d background images", len(self.list))

    def addHardNegatives(self, imgs):
        """Append patches to the hard negative pool, between rounds only."""
        size = self.config.img_o_size
        for img in imgs:
            assert img.shape[:2] == (size, size), \
                   "Hard negatives must be %dx%d patches." % (size, size)
            self.hds.append(img)

    def _newRound(self, size, thread_n):
        n_bg = len(self.list)
        self.states = []
        for tid in range(thread_n):
            quota = len(range(tid, n_bg, thread_n))
            current_idx = (self.bg_offset + tid) % n_bg if n_bg else 0
            seed = self._rng.randint(np.iinfo(np.int32).max)
            self.states.append(State(tid, current_idx, quota, seed))
        self.stats = MiningStats(size)

    def _finishRound(self):
        thread_n = len(self.states)

        # drop the hard negatives drawn in this round
        drawn = set()
        for tid, s in enumerate(self.states):
            drawn.update(range(tid, min(s.current_hd_idx, len(self.hds)), thread_n))
            drawn.difference_update(s.hd_kept)
        if drawn:
            self.hds = [img for i, img in enumerate(self.hds) if i not in drawn]

        # resume from the first background not fully swept by every worker
        done = [s.bg_done - (0 if s.reset else 1)
                for s in self.states if s.bg_done > 0 or s.bg_left > 0]
        if done and self.list:
            self.bg_offset = (self.bg_offset + min(done) * thread_n) % len(self.list)

        self.bg_used += self.stats.nega_n
        self.stats.nega_n = 0
        self.states = []

    def generate(self, joincascador, size, verbose=False):
        """Generate more negative samples.

        Every generated sample gets through all carts of `joincascador`.
        Mining stops when `size` samples are found or every background has
        been swept once, so fewer samples than requested is a normal outcome.

        Parameters
        ----------
        joincascador : JoinCascador
            The cascade in training, read-only while mining.
        size : int
            How many samples we need.

        Returns
        -------
        imgs : list of np.array
            Negative samples.
        scores : np.array of shape = [real_size]
            Scores of the negative samples.
        shapes : np.array of shape = [real_size, landmark_n, 2]
            Shapes of the negative samples.
        real_size : int
            Number of samples found, `real_size <= size`.
        """
        landmark_n = self.config.landmark_n
        if size <= 0:
            return [], np.zeros(0), np.zeros((0, landmark_n, 2)), 0

        assert joincascador.mean_shape is not None, "The cascade needs a mean shape."
        assert self.config.mining_factor > 1.0, "mining_factor must be > 1."

        thread_n = max(1, int(self.config.thread_n))
        self._newRound(size, thread_n)

        imgs, scores, shapes = [], [], []
        LOGGER.info("Mining %d hard negatives with %d workers, %d in pool, %d backgrounds",
                    size, thread_n, len(self.hds), len(self.list))

        with cf.ThreadPoolExecutor(max_workers=thread_n) as executor:
            futures = [executor.submit(self.parallelMining, tid, joincascador, size,
                                       imgs, scores, shapes, self._write_lock, self.stats)
                       for tid in range(thread_n)]
            while True:
                done, pending = cf.wait(futures, timeout=5.0)
                if not pending:
                    break
                if verbose:
                    LOGGER.info("Mining %.2f%%, %d background images used",
                                self.stats.ratio * 100, self.reportBgImageUsed())
            for future in futures:
                # re-raise worker errors
                future.result()

        real_size = len(imgs)
        LOGGER.info("Mined %d/%d hard negatives, %s", real_size, size, self.stats)
        if real_size < size:
            LOGGER.warning("Backgrounds exhausted, only %d of %d hard negatives found",
                           real_size, size)
        self._finishRound()

        return (imgs,
                np.asarray(scores, dtype=np.float64),
                np.asarray(shapes, dtype=np.float64).reshape(real_size, landmark_n, 2),
                real_size)

    def parallelMining(self, tid, joincascador, size, imgs, scores, shapes, write_lock, stats):
        """Mining loop of one worker.

        `nextImage` only touches the worker's own state, so the write lock
        guards nothing but the appends and the counters in `stats`.

        Parameters
        ----------
        tid : int
            Worker id.
        imgs, scores, shapes : list
            Shared outputs.
        write_lock : threading.Lock
        stats : MiningStats
        """
        state = self.states[tid]
        mean_shape = joincascador.mean_shape

        while len(imgs) < size:
            img = self.nextImage(tid)
            if img is None:
                break

            shape = randomShape(mean_shape, self.config, state.rng)
            accepted, score, shape, n = joincascador.validate(imagePyramid(img), shape)

            with write_lock:
                stats.patches_n += 1
                stats.carts_n += n
                if accepted and len(imgs) < size:
                    imgs.append(img)
                    scores.append(score)
                    shapes.append(shape)
                    stats.ratio = len(imgs) / size
                    continue
            # a hard negative found after the target is reached goes back to the pool
            if accepted and state.last_hd_idx is not None:
                state.hd_kept.add(state.last_hd_idx)

    def _resetWindow(self, s):
        s.win_size = self.config.mining_min_size
        s.factor = self.config.mining_factor
        s.step = max(1, int(s.win_size * self.config.mining_step_ratio))
        s.x, s.y = 0, 0

    def _nextBackground(self, s):
        thread_n = len(self.states)
        while s.bg_left > 0:
            path = self.list[s.current_idx]
            s.current_idx = (s.current_idx + thread_n) % len(self.list)
            s.bg_left -= 1
            s.bg_done += 1
            with self._write_lock:
                self.stats.nega_n += 1

            img = cv2.imread(path, cv2.IMREAD_GRAYSCALE)
            if img is None:
                LOGGER.warning("Skip unreadable background image %s", path)
                continue
            if min(img.shape) < self.config.mining_min_size:
                LOGGER.debug("Skip background image %s smaller than %d",
                             path, self.config.mining_min_size)
                continue

            s.bg_img = img
            s.bg_view = img
            s.transform_type = 0
            self._resetWindow(s)
            s.reset = False
            return True

        s.bg_img = None
        s.bg_view = None
        return False

    def _resize(self, patch):
        size = self.config.img_o_size
        h, w = patch.shape
        if (h, w) == (size, size):
            return patch.copy()
        return ndimage.zoom(patch, (size / h, size / w), order=1)

    def nextImage(self, tid):
        """Next candidate patch of worker `tid`, None when it has nothing left.

        Patches come from the hard negative pool first. Backgrounds are swept
        in raster order, inside a scale loop, inside a loop over the views in
        `TRANSFORMS`.
        """
        s = self.states[tid]
        thread_n = len(self.states)

        if s.current_hd_idx < len(self.hds):
            img = self.hds[s.current_hd_idx]
            s.last_hd_idx = s.current_hd_idx
            s.current_hd_idx += thread_n
            return img
        s.last_hd_idx = None

        n_transform = min(self.config.mining_transform_n, len(TRANSFORMS))
        while True:
            if s.reset:
                if not self._nextBackground(s):
                    return None
                continue

            h, w = s.bg_view.shape
            if s.win_size > min(h, w):
                s.transform_type += 1
                if s.transform_type >= n_transform:
                    s.reset = True
                    continue
                s.bg_view = TRANSFORMS[s.transform_type](s.bg_img)
                self._resetWindow(s)
                continue

            if s.y + s.win_size > h:
                s.win_size = max(s.win_size + 1, int(math.floor(s.win_size * s.factor)))
                s.step = max(1, int(s.win_size * self.config.mining_step_ratio))
                s.x, s.y = 0, 0
                continue

            if s.x + s.win_size > w:
                s.x = 0
                s.y += s.step
                continue

            patch = s.bg_view[s.y:s.y + s.win_size, s.x:s.x + s.win_size]
            s.x += s.step
            return self._resize(patch)

    def reportBgImageUsed(self):
        """Number of background images used.

        Read without the lock, so it may be slightly off while mining.
        """
        return self.bg_used + self.stats.nega_n
