import cv2
import numpy as np
import pytest

from jdacascade import Cart, Config, DataSet, JoinCascador


@pytest.fixture
def config():
    return Config(
        img_o_size=16,
        landmark_n=3,
        mining_min_size=16,
        mining_factor=1.3,
        mining_step_ratio=0.5,
        mining_transform_n=4,
        thread_n=2,
        random_state=1,
    )


@pytest.fixture
def mean_shape():
    return np.array([[4.0, 5.0], [12.0, 5.0], [8.0, 11.0]])


@pytest.fixture
def accept_all(mean_shape):
    # no carts, every patch gets through
    return JoinCascador(mean_shape)


@pytest.fixture
def reject_all(mean_shape):
    cascador = JoinCascador(mean_shape)
    cascador.addCart(Cart([], [], [-1.0], th=0.0))
    return cascador


def write_backgrounds(directory, n, size=(48, 48), seed=0):
    """Write `n` random grayscale backgrounds and a list file naming them."""
    rng = np.random.RandomState(seed)
    names = []
    for i in range(n):
        name = "bg_%03d.png" % i
        cv2.imwrite(str(directory / name), rng.randint(0, 256, size=size).astype(np.uint8))
        names.append(name)
    list_file = directory / "bg.txt"
    list_file.write_text("\n".join(names) + "\n")
    return str(list_file)


def make_dataset(config, scores, is_pos=True, shape_mask=None, imgs=None):
    """A dataset whose sample `i` has an image filled with `i` and shapes offset by `i`.

    Passing `imgs` replaces the filled images.
    """
    n = len(scores)
    landmark_n = config.landmark_n
    if imgs is None:
        imgs = [np.full((config.img_o_size, config.img_o_size), i, dtype=np.uint8)
                for i in range(n)]
    base = np.arange(landmark_n * 2, dtype=np.float64).reshape(landmark_n, 2)
    current_shapes = np.array([base + i for i in range(n)])
    if is_pos:
        gt_shapes = np.array([base + 100 + i for i in range(n)])
        if shape_mask is None:
            shape_mask = np.ones(n, dtype=np.int32)
    else:
        gt_shapes = np.zeros((n, landmark_n, 2))
        shape_mask = -np.ones(n, dtype=np.int32)
    dataset = DataSet(is_pos, config)
    dataset.append(imgs, gt_shapes, shape_mask, current_shapes, scores)
    return dataset


def assert_aligned(dataset):
    """Every field has `size` entries and entry `i` belongs to the same sample."""
    n = dataset.size
    assert len(dataset.imgs) == len(dataset.imgs_half) == len(dataset.imgs_quarter) == n
    for field in (dataset.gt_shapes, dataset.shape_mask, dataset.current_shapes,
                  dataset.scores, dataset.last_scores, dataset.weights):
        assert len(field) == n
    for i in range(n):
        sample_id = int(dataset.imgs[i][0, 0])
        assert abs(int(dataset.imgs_half[i][0, 0]) - sample_id) <= 1
        assert abs(int(dataset.imgs_quarter[i][0, 0]) - sample_id) <= 1
        assert dataset.current_shapes[i][0, 0] == sample_id
        if dataset.is_pos:
            assert dataset.gt_shapes[i][0, 0] == 100 + sample_id
