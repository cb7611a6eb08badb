#
# config.py
#   Training configuration.
#
# Author : Donny
#

import os

from .io_utils import load_yaml


class Config:
    """Training configuration.

    Every attribute can be overridden from a YAML file with a key of the same
    name, see `Config.load`.

    Parameters
    ----------
    **kwargs
        Attributes to override.
    """

    def __init__(self, **kwargs):
        # Size of a training patch, (img_o_size x img_o_size)
        self.img_o_size = 80
        # Number of landmarks of a shape
        self.landmark_n = 5

        # Perturbation of the mean shape, see DataSet.randomShape
        self.shift_size = 0.1
        self.scale_jitter = 0.1
        self.rotation_jitter = 10.0

        # Hard negative mining sweep
        self.mining_min_size = 80
        self.mining_factor = 1.3
        self.mining_step_ratio = 0.5
        self.mining_transform_n = 4
        self.thread_n = os.cpu_count() or 1

        # N(negative) / N(positive)
        self.nps = 1.0

        # Data lists
        self.face_txt = ""
        self.nega_txt = []
        self.bg_txt = ""
        self.snapshot_path = "data/jda_train_data.data"

        self.random_state = 0

        for key, value in kwargs.items():
            if not hasattr(self, key):
                raise KeyError("Unknown config key: %s" % key)
            setattr(self, key, value)

    @classmethod
    def load(cls, filename):
        """Create a config from a YAML file."""
        return cls(**load_yaml(filename))

    def __str__(self):
        return ("Config(img_o_size=%d, "
                "landmark_n=%d, "
                "mining_min_size=%d, "
                "mining_factor=%f, "
                "thread_n=%d, "
                "nps=%f)") % (
                self.img_o_size,
                self.landmark_n,
                self.mining_min_size,
                self.mining_factor,
                self.thread_n,
                self.nps)
