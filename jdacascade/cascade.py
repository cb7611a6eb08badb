#
# cascade.py
#   Evaluation side of the joint cascade: carts and the cascade of stages.
#
# Author : Donny
#

import numpy as np


class Cart:
    """A regression tree over shape-indexed features.

    Nodes are stored in heap order: the children of node `i` are `2i+1`
    (feature value <= threshold) and `2i+2`.

    Parameters
    ----------
    features : list of Feature
        Split feature of every internal node.
    thresholds : array-like of shape = [n_internal]
        Split threshold of every internal node.
    leaf_scores : array-like of shape = [n_internal + 1]
        The score a sample gets when it falls into a leaf.
    th : float, optional
        Rejection threshold, a sample whose accumulated score drops below it
        after this cart is not a face.
    """

    def __init__(self, features, thresholds, leaf_scores, th=-np.inf):
        self.features = list(features)
        self.thresholds = np.asarray(thresholds, dtype=np.float64)
        self.leaf_scores = np.asarray(leaf_scores, dtype=np.float64)
        self.th = float(th)

        n_internal = len(self.features)
        assert len(self.thresholds) == n_internal, "One threshold per split."
        assert len(self.leaf_scores) == n_internal + 1, \
               "A binary tree has one more leaf than splits."
        assert (n_internal + 1) & n_internal == 0, "The tree must be complete."

    @property
    def depth(self):
        return int(np.log2(len(self.leaf_scores)))

    def forward(self, image, shape):
        """Leaf index reached by a sample."""
        n_internal = len(self.features)
        node = 0
        while node < n_internal:
            value = self.features[node].evaluate(image, shape)
            if value <= self.thresholds[node]:
                node = 2 * node + 1
            else:
                node = 2 * node + 2
        return node - n_internal

    def score(self, image, shape):
        return float(self.leaf_scores[self.forward(image, shape)])


class JoinCascador:
    """The cascade in training.

    Stages are appended, never replaced; the score of a sample is the sum of
    the responses of every cart of every stage trained so far.

    Parameters
    ----------
    mean_shape : np.array of shape = [landmark_n, 2], optional
        Mean shape of the positive samples, the starting shape of mined
        negatives.
    """

    def __init__(self, mean_shape=None):
        self.mean_shape = mean_shape
        # self.stages : list of list of Cart
        self.stages = []

    def __len__(self):
        return len(self.stages)

    def newStage(self):
        self.stages.append([])

    def addCart(self, cart):
        if not self.stages:
            self.newStage()
        self.stages[-1].append(cart)

    def carts(self):
        for stage in self.stages:
            for cart in stage:
                yield cart

    def score(self, image, shape):
        """Cumulative response of all trained carts."""
        return sum(cart.score(image, shape) for cart in self.carts())

    def validate(self, image, shape):
        """Run a sample through the cascade.

        Parameters
        ----------
        image : tuple of np.array
            The (original, half, quarter) patches of the sample, see
            `feature.imagePyramid`.
        shape : np.array of shape = [landmark_n, 2]

        Returns
        -------
        accepted : bool
            Whether every cart kept the sample.
        score : float
            Accumulated score when the sample was accepted or rejected.
        shape : np.array of shape = [landmark_n, 2]
            The shape of the sample.
        n : int
            Number of carts evaluated.
        """
        score = 0.0
        n = 0
        for cart in self.carts():
            score += cart.score(image, shape)
            n += 1
            if score < cart.th:
                return False, score, shape, n
        return True, score, shape, n
