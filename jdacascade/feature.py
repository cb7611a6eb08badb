#
# feature.py
#   Shape-indexed pixel difference features.
#
# Author : Donny
#

import numpy as np
from scipy import ndimage
from sklearn.utils import check_random_state


def _half(img):
    h, w = img.shape[:2]
    factors = (max(1, round(h / 2)) / h, max(1, round(w / 2)) / w) + (1,) * (img.ndim - 2)
    return ndimage.zoom(img, factors, order=1)


def imagePyramid(img):
    """(original, half, quarter) scales of a patch, as features read them."""
    img_half = _half(img)
    return img, img_half, _half(img_half)


class Feature:
    """Pixel difference feature indexed by the current shape.

    The two sampled pixels are placed relative to two landmarks, so the
    feature follows the face while the shape estimate is refined.

    Parameters
    ----------
    landmark_id1, landmark_id2 : int
        The landmarks the two pixels are anchored on.
    offset1, offset2 : tuple of float
        (dx, dy) offsets of the two pixels from their landmarks, in pixels
        of the original scale.
    scale : int, optional
        0 for the original patch, 1 for the half one, 2 for the quarter one.
    """

    def __init__(self, landmark_id1, offset1, landmark_id2, offset2, scale=0):
        assert scale in (0, 1, 2), "scale is 0, 1 or 2."
        self.landmark_id1 = int(landmark_id1)
        self.landmark_id2 = int(landmark_id2)
        self.offset1 = (float(offset1[0]), float(offset1[1]))
        self.offset2 = (float(offset2[0]), float(offset2[1]))
        self.scale = int(scale)

    def __repr__(self):
        return "Feature(%d, %s, %d, %s, scale=%d)" % (
            self.landmark_id1, self.offset1, self.landmark_id2, self.offset2, self.scale)

    def _pixel(self, image, shape, landmark_id, offset):
        h, w = image.shape[:2]
        ratio = 2 ** self.scale
        x = int(round((shape[landmark_id, 0] + offset[0]) / ratio))
        y = int(round((shape[landmark_id, 1] + offset[1]) / ratio))
        # pixels outside the patch are clamped to its border
        x = min(max(x, 0), w - 1)
        y = min(max(y, 0), h - 1)
        return int(image[y, x])

    def evaluate(self, imgs, shape):
        """Evaluate the feature on a sample.

        Parameters
        ----------
        imgs : tuple of np.array, or np.array
            The (original, half, quarter) patches of the sample, see
            `imagePyramid`. A single array is the original patch and only
            serves scale 0 features.
        shape : np.array of shape = [landmark_n, 2]
            The current shape of the patch, in original scale pixels.

        Returns
        -------
        value : int
            The difference of the two sampled pixels.
        """
        if isinstance(imgs, np.ndarray):
            assert self.scale == 0, "A scaled feature needs the image pyramid."
            image = imgs
        else:
            image = imgs[self.scale]
        return (self._pixel(image, shape, self.landmark_id1, self.offset1)
                - self._pixel(image, shape, self.landmark_id2, self.offset2))


def generateFeaturePool(n, landmark_n, radius, random_state=None):
    """Draw `n` random features.

    Offsets are drawn uniformly inside a disc of `radius` pixels around
    their landmarks, scales uniformly among the three of the pyramid.

    Returns
    -------
    features : list of Feature
    """
    rng = check_random_state(random_state)
    features = []
    for _ in range(n):
        ids = rng.randint(0, landmark_n, size=2)
        offsets = []
        for _ in range(2):
            r = radius * np.sqrt(rng.uniform(0.0, 1.0))
            theta = rng.uniform(0.0, 2 * np.pi)
            offsets.append((r * np.cos(theta), r * np.sin(theta)))
        scale = rng.randint(0, 3)
        features.append(Feature(ids[0], offsets[0], ids[1], offsets[1], scale))
    return features
