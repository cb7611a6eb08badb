#
# shape.py
#   Shape perturbation helpers.
#
# Author : Donny
#

import numpy as np
from sklearn.utils import check_random_state


def randomShape(mean_shape, config, random_state=None):
    """A random perturbation of the mean shape.

    The mean shape is scaled and rotated around its centroid, then shifted.

    Parameters
    ----------
    mean_shape : np.array of shape = [landmark_n, 2]
    config : Config
        Provides `shift_size`, `scale_jitter`, `rotation_jitter` and
        `img_o_size`.
    random_state : None, int or np.random.RandomState

    Returns
    -------
    shape : np.array of shape = [landmark_n, 2]
    """
    rng = check_random_state(random_state)
    mean_shape = np.asarray(mean_shape, dtype=np.float64)
    center = mean_shape.mean(axis=0)

    scale = 1.0 + rng.uniform(-config.scale_jitter, config.scale_jitter)
    angle = np.deg2rad(rng.uniform(-config.rotation_jitter, config.rotation_jitter))
    shift = rng.uniform(-config.shift_size, config.shift_size, size=2) * config.img_o_size

    c, s = np.cos(angle), np.sin(angle)
    rotation = np.array([[c, -s], [s, c]])
    return (mean_shape - center).dot(rotation.T) * scale + center + shift


def randomShapes(mean_shape, n, config, random_state=None):
    """`n` random perturbations of the mean shape, as [n, landmark_n, 2]."""
    rng = check_random_state(random_state)
    mean_shape = np.asarray(mean_shape, dtype=np.float64)
    shapes = np.zeros((n,) + mean_shape.shape)
    for i in range(n):
        shapes[i] = randomShape(mean_shape, config, rng)
    return shapes
