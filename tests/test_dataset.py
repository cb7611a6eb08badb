import cv2
import numpy as np
import pytest

from jdacascade import Cart, DataSet, Feature
from jdacascade.feature import generateFeaturePool

from .conftest import assert_aligned, make_dataset


def assert_scores_follow_samples(dataset, scores):
    for i in range(dataset.size):
        assert dataset.scores[i] == scores[int(dataset.imgs[i][0, 0])]


def test_remove_lowest_scoring_face(config):
    pos = make_dataset(config, [0.5, -1.0, 2.0])
    th = pos.calcThresholdByNumber(1)
    assert pos.preRemove(th) == 1
    pos.remove(th)
    assert pos.size == 2
    assert sorted(pos.scores.tolist()) == [0.5, 2.0]
    assert_aligned(pos)
    assert_scores_follow_samples(pos, [0.5, -1.0, 2.0])


def test_pre_remove_matches_remove(config):
    rng = np.random.RandomState(3)
    scores = rng.normal(size=40)
    neg = make_dataset(config, scores, is_pos=False)
    for th in (-0.5, 0.0, 0.7):
        before = neg.size
        removed = neg.preRemove(th)
        neg.remove(th)
        assert neg.size == before - removed
        assert np.all(neg.scores >= th)
        assert_aligned(neg)
        assert_scores_follow_samples(neg, scores)


def test_remove_keeps_sorted_order(config):
    pos = make_dataset(config, [3.0, 2.0, 1.0, 0.0])
    assert pos.is_sorted
    pos.remove(1.5)
    assert pos.scores.tolist() == [3.0, 2.0]
    assert pos.is_sorted


def test_remove_everything_and_nothing(config):
    pos = make_dataset(config, [0.1, 0.2, 0.3])
    pos.remove(-10.0)
    assert pos.size == 3
    pos.remove(pos.calcThresholdByNumber(3))
    assert pos.size == 0
    assert_aligned(pos)


def test_qsort_descending_and_aligned(config):
    rng = np.random.RandomState(0)
    scores = np.round(rng.normal(size=200), 1)
    pos = make_dataset(config, scores)
    pos.qsort()
    assert pos.is_sorted
    assert np.all(np.diff(pos.scores) <= 0)
    assert_aligned(pos)
    assert_scores_follow_samples(pos, scores)


@pytest.mark.parametrize("scores", [
    np.zeros(250),
    np.arange(250, dtype=np.float64),
    np.arange(250, dtype=np.float64)[::-1].copy(),
])
def test_qsort_degenerate_inputs(config, scores):
    neg = make_dataset(config, scores, is_pos=False)
    neg.qsort()
    assert neg.is_sorted
    assert sorted(neg.scores.tolist(), reverse=True) == neg.scores.tolist()


def test_qsort_empty_and_single(config):
    pos = DataSet(True, config)
    pos.qsort()
    assert pos.size == 0 and pos.is_sorted
    pos = make_dataset(config, [1.0])
    pos.qsort()
    assert pos.scores.tolist() == [1.0]


def test_is_sorted_tracks_scores(config):
    pos = make_dataset(config, [1.0, 2.0])
    assert not pos.is_sorted
    pos.swap(0, 1)
    pos.qsort()
    assert pos.is_sorted
    pos.updateScores(Cart([], [], [0.0]))
    assert pos.is_sorted


def test_swap_exchanges_every_field(config):
    pos = make_dataset(config, [1.0, 2.0, 3.0], shape_mask=[1, -1, 1])
    pos.weights[:] = [0.1, 0.2, 0.3]
    pos.swap(0, 1)
    assert pos.scores.tolist() == [2.0, 1.0, 3.0]
    assert pos.weights.tolist() == [0.2, 0.1, 0.3]
    assert pos.shape_mask.tolist() == [-1, 1, 1]
    assert_aligned(pos)


def test_threshold_by_rate(config):
    scores = np.arange(10, dtype=np.float64)
    neg = make_dataset(config, scores[::-1].copy(), is_pos=False)
    for rate in (0.0, 0.3, 0.55, 0.9, 1.0):
        th = neg.calcThresholdByRate(rate)
        assert abs(neg.preRemove(th) - round(rate * neg.size)) <= 1


def test_threshold_by_rate_rounds_halves_up(config):
    neg = make_dataset(config, np.arange(10, dtype=np.float64), is_pos=False)
    # 2.5 samples, rounded to 3 rather than to the even 2
    assert neg.preRemove(neg.calcThresholdByRate(0.25)) == 3
    assert neg.preRemove(neg.calcThresholdByRate(0.15)) == 2


def test_thresholds_on_empty_dataset(config):
    neg = DataSet(False, config)
    assert neg.calcThresholdByRate(0.5) == 0.0
    assert neg.calcThresholdByNumber(3) == 0.0
    assert neg.preRemove(0.0) == 0
    neg.remove(0.0)
    assert neg.size == 0


def test_update_and_reset_scores(config):
    pos = make_dataset(config, [0.5, -1.0, 2.0])
    before = pos.scores.copy()
    pos.updateScores(Cart([], [], [0.25]))
    assert np.allclose(pos.scores, before + 0.25)
    assert np.array_equal(pos.last_scores, before)
    pos.resetScores()
    assert np.array_equal(pos.scores, before)


def test_update_scores_uses_current_shape(config):
    gradient = np.tile(np.arange(16, dtype=np.uint8) * 10, (16, 1))
    pos = make_dataset(config, [0.0, 0.0], imgs=[gradient, gradient.copy()])
    # landmark 0 left of landmark 1 for sample 1, right of it for sample 0
    pos.current_shapes[0] = [[5.0, 0.0], [1.0, 0.0], [0.0, 0.0]]
    cart = Cart([Feature(0, (0.0, 0.0), 1, (0.0, 0.0))], [0.0], [1.0, -1.0])
    pos.updateScores(cart)
    assert pos.scores.tolist() == [-1.0, 1.0]


def test_update_weights(config):
    pos = make_dataset(config, [0.0, 1.0])
    neg = make_dataset(config, [0.0, 1.0], is_pos=False)
    pos.updateWeights()
    neg.updateWeights()
    assert np.allclose(pos.weights, np.exp([0.0, -1.0]))
    assert np.allclose(neg.weights, np.exp([0.0, 1.0]))

    DataSet.updateJointWeights(pos, neg)
    total = pos.weights.sum() + neg.weights.sum()
    assert total == pytest.approx(1.0)
    assert neg.weights[1] / pos.weights[1] == pytest.approx(np.exp(2.0))


def test_mean_and_std(config):
    pos = make_dataset(config, [1.0, 3.0])
    neg = make_dataset(config, [-1.0, -3.0], is_pos=False)
    mean, std = DataSet.calcMeanAndStd(pos, neg)
    assert mean == pytest.approx(0.0)
    assert std == pytest.approx(np.sqrt(5.0))

    pos.applyMeanAndStd(mean, std)
    neg.applyMeanAndStd(mean, std)
    mean, std = DataSet.calcMeanAndStd(pos, neg)
    assert mean == pytest.approx(0.0)
    assert std == pytest.approx(1.0)


def test_mean_and_std_degenerate(config):
    pos = DataSet(True, config)
    neg = DataSet(False, config)
    assert DataSet.calcMeanAndStd(pos, neg) == (0.0, 0.0)
    pos = make_dataset(config, [2.0, 2.0])
    pos.applyMeanAndStd(2.0, 0.0)
    assert pos.scores.tolist() == [0.0, 0.0]


def test_mean_shape_skips_faces_without_gt(config):
    pos = make_dataset(config, [0.0, 0.0, 0.0], shape_mask=[1, -1, 1])
    mean_shape = pos.calcMeanShape()
    expected = (pos.gt_shapes[0] + pos.gt_shapes[2]) / 2
    assert np.allclose(mean_shape, expected)
    assert pos.hasGtShape(0) and not pos.hasGtShape(1)


def test_shape_residual(config):
    pos = make_dataset(config, [0.0, 0.0, 0.0])
    residual = pos.calcShapeResidual([2, 0])
    assert residual.shape == (2, config.landmark_n * 2)
    assert np.allclose(residual, 100.0)
    residual = pos.calcShapeResidual([1], landmark_id=2)
    assert residual.shape == (1, 2)


def test_positive_only_operations_fail_on_negative(config):
    neg = make_dataset(config, [0.0], is_pos=False)
    with pytest.raises(AssertionError):
        neg.calcShapeResidual([0])
    with pytest.raises(AssertionError):
        neg.hasGtShape(0)


def test_more_neg_samples_only_on_negative(config, accept_all):
    pos = make_dataset(config, [0.0])
    with pytest.raises(AssertionError):
        pos.moreNegSamples(10, 1.0, accept_all)


def test_random_shapes(config, mean_shape):
    shapes = DataSet.randomShapes(mean_shape, 20, config, random_state=0)
    assert shapes.shape == (20, 3, 2)
    assert not np.allclose(shapes[0], shapes[1])
    # perturbations stay near the mean shape
    assert np.all(np.abs(shapes - mean_shape) < config.img_o_size)
    again = DataSet.randomShapes(mean_shape, 20, config, random_state=0)
    assert np.array_equal(shapes, again)


def test_calc_feature_values(config):
    rng = np.random.RandomState(0)
    imgs = [rng.randint(0, 256, size=(16, 16)).astype(np.uint8) for _ in range(6)]
    pos = make_dataset(config, np.zeros(6), imgs=imgs)
    features = generateFeaturePool(5, config.landmark_n, 4.0, random_state=0)
    features += [Feature(0, (1.0, 0.0), 2, (0.0, 1.0), scale=s) for s in (1, 2)]
    idx = [5, 0, 3]
    fea = pos.calcFeatureValues(features, idx, max_parallel_threads=3)
    assert fea.shape == (7, 3)
    for i, feature in enumerate(features):
        for j, k in enumerate(idx):
            assert fea[i, j] == feature.evaluate(pos.pyramid(k), pos.current_shapes[k])


def test_calc_feature_values_empty(config):
    pos = make_dataset(config, [0.0])
    assert pos.calcFeatureValues([], [0]).shape == (0, 1)
    assert pos.calcFeatureValues(generateFeaturePool(2, 3, 2.0), []).shape == (2, 0)


def test_clear(config):
    pos = make_dataset(config, [1.0, 2.0])
    pos.clear()
    assert pos.size == 0
    assert_aligned(pos)


def test_load_positive_dataset(tmp_path, config):
    img = np.zeros((40, 40), dtype=np.uint8)
    img[10:26, 10:26] = 200
    cv2.imwrite(str(tmp_path / "face.png"), img)
    (tmp_path / "face.txt").write_text(
        "face.png 10 10 16 16 12 14 20 14 16 22\n"
        "face.png 10 10 16 16 -1 -1 -1 -1 -1 -1\n")

    pos = DataSet(True, config)
    pos.loadPositiveDataSet(str(tmp_path / "face.txt"))
    assert pos.size == 2
    assert pos.shape_mask.tolist() == [1, -1]
    assert pos.imgs[0].shape == (16, 16)
    assert np.all(pos.imgs[0] == 200)
    assert pos.imgs_half[0].shape == (8, 8)
    assert pos.imgs_quarter[0].shape == (4, 4)
    assert np.all(np.abs(pos.imgs_quarter[0].astype(int) - 200) <= 1)
    assert np.allclose(pos.gt_shapes[0], [[2, 4], [10, 4], [6, 12]])
    assert len(pos.current_shapes) == len(pos.weights) == 2


def test_load_dataset(tmp_path, config):
    cv2.imwrite(str(tmp_path / "face.png"), np.full((16, 16), 50, dtype=np.uint8))
    (tmp_path / "face.txt").write_text("face.png 0 0 16 16 4 5 12 5 8 11\n")
    cv2.imwrite(str(tmp_path / "neg.png"), np.full((32, 32), 7, dtype=np.uint8))
    (tmp_path / "group.txt").write_text("neg.png\nneg.png\n")
    (tmp_path / "nega.txt").write_text("group.txt\n")

    config.face_txt = str(tmp_path / "face.txt")
    config.nega_txt = [str(tmp_path / "nega.txt")]
    pos = DataSet(True, config)
    neg = DataSet(False, config)
    DataSet.loadDataSet(pos, neg, config)

    assert pos.size == 1
    assert np.allclose(pos.mean_shape, [[4, 5], [12, 5], [8, 11]])
    assert neg.mean_shape is pos.mean_shape
    assert len(neg.neg_generator.hds) == 2
    assert neg.neg_generator.hds[0].shape == (16, 16)
    assert pos.weights.tolist() == [1.0]


def test_dump(tmp_path, config):
    pos = make_dataset(config, [0.0, 1.0])
    pos.dump(str(tmp_path / "dump"))
    dumped = sorted(p.name for p in (tmp_path / "dump").iterdir())
    assert dumped == ["000000.png", "000001.png"]
    img = cv2.imread(str(tmp_path / "dump" / "000001.png"), cv2.IMREAD_GRAYSCALE)
    assert np.all(img == 1)


def test_scaled_images_follow_their_sample(config):
    pos = make_dataset(config, [1.0, 3.0, 2.0, 0.0])
    assert [img.shape for img in pos.pyramid(0)] == [(16, 16), (8, 8), (4, 4)]
    pos.qsort()
    assert_aligned(pos)
    pos.remove(1.5)
    assert pos.size == 2
    assert_aligned(pos)
    pos.clear()
    assert pos.imgs_half == [] and pos.imgs_quarter == []
