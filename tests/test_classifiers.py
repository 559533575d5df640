"""
UNIT TEST: CLASSIFIER KERNELS & ENSEMBLE

DESCRIPTION:
    Validates the four inference kernels, the parameter codec and every
    ensemble combination strategy, including per-model failure isolation.
"""

import json
import unittest
import logging
import math
import sys
import os

# Add project root to path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import numpy as np

from sentinel.ai.classifiers import (
    DecisionTreeParams,
    LogisticParams,
    NaiveBayesParams,
    SvmParams,
    TreeLeaf,
    TreeSplit,
    decode_params,
    encode_params,
    log_gaussian,
    predict_decision_tree,
    predict_logistic,
    predict_naive_bayes,
    predict_svm,
)
from sentinel.ai.ensemble import EnsembleScorer, EnsembleStrategy
from sentinel.errors import EmptyEnsemble, InvalidConfiguration, NoValidPredictions, SchemaMismatch
from sentinel.models.samples import FeatureVector

VECTOR = FeatureVector((1.0,), ("x",))


def fixed(score):
    """Single-feature logistic model that always outputs `score`."""
    return LogisticParams((0.0,), math.log(score / (1.0 - score)))


class TestKernels(unittest.TestCase):

    def setUp(self):
        logging.disable(logging.CRITICAL)

    def test_logistic(self):
        params = LogisticParams((1.0, 1.0), 0.0)
        neutral = predict_logistic((0.0, 0.0), params)
        self.assertAlmostEqual(neutral.score, 0.5)
        self.assertFalse(neutral.is_valid)
        self.assertAlmostEqual(neutral.confidence, 0.5)

        strong = predict_logistic((2.0, 2.0), params)
        self.assertAlmostEqual(strong.score, 1 / (1 + math.exp(-4)))
        self.assertTrue(strong.is_valid)
        self.assertAlmostEqual(strong.confidence, strong.score)

    def test_length_mismatch_raises(self):
        with self.assertRaises(SchemaMismatch):
            predict_logistic((1.0, 2.0), LogisticParams((1.0, 1.0, 1.0), 0.0))
        nb = NaiveBayesParams(0.5, 0.5, (0.0,), (0.0,), (1.0,), (1.0,))
        with self.assertRaises(SchemaMismatch):
            predict_naive_bayes((1.0, 2.0), nb)
        sv = SvmParams(((0.0, 0.0, 0.0),), (1.0,), (1.0,), 0.0, 1.0)
        with self.assertRaises(SchemaMismatch):
            predict_svm((1.0, 2.0), sv)
        tree = DecisionTreeParams(TreeSplit(3, 0.0, TreeLeaf(0.1, 0.9), TreeLeaf(0.9, 0.9)))
        with self.assertRaises(SchemaMismatch):
            predict_decision_tree((1.0,), tree)

    def test_log_gaussian_nonpositive_std(self):
        out = log_gaussian(np.array([1.0, 1.0]), np.array([0.0, 0.0]), np.array([0.0, 1.0]))
        self.assertEqual(out[0], -math.inf)
        self.assertTrue(math.isfinite(out[1]))

    def test_naive_bayes_rules_out_zero_std_class(self):
        params = NaiveBayesParams(0.9, 0.1, (0.0,), (0.0,), (0.0,), (1.0,))
        prediction = predict_naive_bayes((0.0,), params)
        self.assertEqual(prediction.score, 0.0)
        self.assertFalse(prediction.is_valid)

    def test_naive_bayes_both_ruled_out_uses_prior(self):
        params = NaiveBayesParams(0.7, 0.3, (0.0,), (0.0,), (0.0,), (-1.0,))
        prediction = predict_naive_bayes((0.0,), params)
        self.assertAlmostEqual(prediction.score, 0.7)
        self.assertTrue(prediction.is_valid)

    def test_naive_bayes_posterior(self):
        params = NaiveBayesParams(0.5, 0.5, (2.0,), (-2.0,), (1.0,), (1.0,))
        self.assertGreater(predict_naive_bayes((1.5,), params).score, 0.99)
        self.assertLess(predict_naive_bayes((-1.5,), params).score, 0.01)

    def test_decision_tree_descent(self):
        params = DecisionTreeParams(TreeSplit(0, 0.5, TreeLeaf(0.2, 0.8), TreeLeaf(0.9, 0.9)))
        left = predict_decision_tree((0.3,), params)
        self.assertEqual((left.score, left.is_valid, left.confidence), (0.2, False, 0.8))
        right = predict_decision_tree((0.5000001,), params)
        self.assertTrue(right.is_valid)
        self.assertEqual(params.depth, 1)

    def test_svm(self):
        params = SvmParams(((0.0, 0.0),), (1.0,), (1.0,), 0.0, 1.0)
        self.assertAlmostEqual(predict_svm((0.0, 0.0), params).score, 1 / (1 + math.exp(-1)))
        far = predict_svm((10.0, 10.0), params)
        self.assertAlmostEqual(far.score, 0.5, places=6)

    def test_tree_checks_feature_count_before_descent(self):
        # The root only reads feature 0, so only the declared count catches a short or long vector.
        params = DecisionTreeParams(TreeSplit(0, 0.5, TreeLeaf(0.2, 0.8), TreeLeaf(0.9, 0.9)), n_features=3)
        self.assertEqual(predict_decision_tree((0.9, 0.0, 0.0), params).score, 0.9)
        for features in ((0.9,), (0.9,) * 7):
            with self.assertRaises(SchemaMismatch):
                predict_decision_tree(features, params)

    def test_codec_round_trip_tree(self):
        params = DecisionTreeParams(TreeSplit(1, -0.25, TreeLeaf(0.1, 0.9),
                                              TreeSplit(0, 2.0, TreeLeaf(0.6, 0.6), TreeLeaf(1.0, 1.0))),
                                    n_features=2)
        blob = json.dumps(encode_params(params))
        self.assertEqual(decode_params("decision_tree", blob), params)
        legacy = {"tree": {"prediction": 0.7, "confidence": 0.7}}
        self.assertIsNone(decode_params("decision_tree", legacy).n_features)

    def test_decode_rejects_malformed(self):
        with self.assertRaises(InvalidConfiguration):
            decode_params("logistic_regression", {"weights": [1.0]})
        with self.assertRaises(InvalidConfiguration):
            decode_params("random_forest", {})


class TestEnsemble(unittest.TestCase):

    def setUp(self):
        logging.disable(logging.CRITICAL)

    def test_empty_ensemble(self):
        with self.assertRaises(EmptyEnsemble):
            EnsembleScorer().predict(VECTOR)

    def test_voting_majority(self):
        ensemble = EnsembleScorer(EnsembleStrategy.VOTING)
        ensemble.add_model("a", fixed(0.8), 0.9)
        ensemble.add_model("b", fixed(0.9), 0.9)
        ensemble.add_model("c", fixed(0.2), 0.9)
        result = ensemble.predict(VECTOR)
        self.assertTrue(result.is_valid)
        self.assertAlmostEqual(result.final_score, 2 / 3)
        self.assertEqual(result.strategy, "voting")

    def test_voting_tie_is_invalid(self):
        ensemble = EnsembleScorer("voting")
        ensemble.add_model("a", fixed(0.8), 0.9)
        ensemble.add_model("b", fixed(0.2), 0.9)
        self.assertFalse(ensemble.predict(VECTOR).is_valid)

    def test_weighted_average_equal_weights_is_mean(self):
        ensemble = EnsembleScorer(EnsembleStrategy.WEIGHTED_AVERAGE)
        scores = [0.8, 0.3, 0.55]
        for i, s in enumerate(scores):
            ensemble.add_model(f"m{i}", fixed(s), accuracy=0.7, weight=1.0)
        self.assertAlmostEqual(ensemble.predict(VECTOR).final_score, sum(scores) / len(scores))

    def test_zero_total_weight_falls_back(self):
        ensemble = EnsembleScorer(EnsembleStrategy.WEIGHTED_AVERAGE)
        ensemble.add_model("a", fixed(0.9), accuracy=0.0)
        result = ensemble.predict(VECTOR)
        self.assertEqual((result.final_score, result.confidence), (0.5, 0.5))

    def test_stacking_squares_accuracy(self):
        ensemble = EnsembleScorer(EnsembleStrategy.STACKING)
        ensemble.add_model("good", fixed(0.8), 0.9)
        ensemble.add_model("weak", fixed(0.2), 0.5)
        expected = (0.81 * 0.8 + 0.25 * 0.2) / (0.81 + 0.25)
        self.assertAlmostEqual(ensemble.predict(VECTOR).final_score, expected)

    def test_adaptive_keeps_confident_models(self):
        ensemble = EnsembleScorer()
        ensemble.add_model("sure_yes", fixed(0.95), 0.8)
        ensemble.add_model("unsure", fixed(0.6), 0.8)
        ensemble.add_model("sure_no", fixed(0.1), 0.8)
        w1, w2 = 0.95 ** 2, 0.9 ** 2
        expected = (0.95 * w1 + 0.1 * w2) / (w1 + w2)
        result = ensemble.predict(VECTOR)
        self.assertAlmostEqual(result.final_score, expected)
        self.assertEqual(result.strategy, "adaptive")

    def test_failing_model_is_isolated(self):
        ensemble = EnsembleScorer("voting")
        ensemble.add_model("ok", fixed(0.9), 0.9)
        ensemble.add_model("broken", LogisticParams((1.0, 1.0, 1.0), 0.0), 0.9)
        ensemble.add_model("other_schema", fixed(0.1), 0.9, feature_names=("y",))
        result = ensemble.predict(VECTOR)
        self.assertEqual([p.model_name for p in result.predictions], ["ok"])
        self.assertTrue(result.is_valid)

    def test_raw_sequence_of_wrong_length_is_rejected(self):
        ensemble = EnsembleScorer()
        tree = DecisionTreeParams(TreeSplit(0, 0.5, TreeLeaf(0.0, 1.0), TreeLeaf(1.0, 1.0)), n_features=3)
        ensemble.add_model("tree", tree, 0.9, feature_names=("a", "b", "c"))
        ensemble.add_model("declared", fixed(0.9), 0.9, feature_names=("x",))
        with self.assertRaises(NoValidPredictions):
            ensemble.predict([1.0] * 7)
        self.assertEqual([p.model_name for p in ensemble.predict([1.0, 0.0, 0.0]).predictions], ["tree"])

    def test_all_models_failing(self):
        ensemble = EnsembleScorer()
        ensemble.add_model("broken", LogisticParams((1.0, 1.0), 0.0), 0.9)
        with self.assertRaises(NoValidPredictions):
            ensemble.predict(VECTOR)

    def test_registry_updates(self):
        ensemble = EnsembleScorer()
        ensemble.add_model("a", fixed(0.9), 0.9)
        ensemble.add_model("b", fixed(0.1), 0.6)
        self.assertTrue(ensemble.remove_model("b"))
        self.assertFalse(ensemble.remove_model("b"))
        ensemble.update_weights({"a": 0.5})
        self.assertEqual(ensemble.info()["weights"], {"a": 0.5})
        with self.assertRaises(InvalidConfiguration):
            ensemble.set_strategy("majority")

    def test_to_dict_restores_predictions(self):
        ensemble = EnsembleScorer(EnsembleStrategy.STACKING)
        ensemble.add_model("lr", fixed(0.7), 0.8, feature_names=("x",))
        ensemble.add_model("nb", NaiveBayesParams(0.5, 0.5, (1.0,), (-1.0,), (1.0,), (1.0,)), 0.7,
                           feature_names=("x",))
        restored = EnsembleScorer.from_dict(ensemble.to_dict())
        self.assertEqual(restored.strategy, EnsembleStrategy.STACKING)
        self.assertAlmostEqual(restored.predict(VECTOR).final_score, ensemble.predict(VECTOR).final_score)


if __name__ == '__main__':
    unittest.main()
