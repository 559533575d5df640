"""
UNIT TEST: MODEL TRAINER

DESCRIPTION:
    Trains every model kind on a cleanly separable two-cluster dataset and
    checks that the exported params score exactly as the fitted estimators
    do and that one failing kind does not take the rest down.
"""

import unittest
import logging
import sys
import os
from unittest import mock

# Add project root to path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import numpy as np
from sklearn.linear_model import LogisticRegression
from sklearn.naive_bayes import GaussianNB
from sklearn.svm import SVC
from sklearn.tree import DecisionTreeClassifier

from sentinel.ai import trainer
from sentinel.ai.classifiers import (
    ModelKind,
    predict_decision_tree,
    predict_logistic,
    predict_naive_bayes,
    predict_svm,
)
from sentinel.ai.ensemble import EnsembleStrategy
from sentinel.errors import SchemaMismatch
from sentinel.models.samples import FeatureVector, ProcessedFeatures

NAMES = ("f1", "f2")


def clusters(n=200, seed=0):
    rng = np.random.default_rng(seed)
    out = []
    for i in range(n):
        target = 1.0 if i % 2 == 0 else 0.0
        center = 2.0 if target else -2.0
        x = rng.normal(center, 0.8, size=2)
        out.append(ProcessedFeatures(FeatureVector(tuple(float(v) for v in x), NAMES), target, {"id": i}))
    return out


class TestTrainer(unittest.TestCase):

    def setUp(self):
        logging.disable(logging.CRITICAL)
        data = clusters()
        self.train, self.validation = data[:160], data[160:]

    def test_every_kind_learns_separable_data(self):
        for kind in trainer.DEFAULT_KINDS:
            with self.subTest(kind=kind.value):
                result = trainer.train_model(kind, self.train, self.validation)
                self.assertTrue(result.success)
                self.assertGreater(result.validation_accuracy, 0.85)
                self.assertEqual(result.params.kind, kind)

    def test_tree_respects_max_depth(self):
        params = trainer.train_decision_tree(self.train, {"max_depth": 2})
        self.assertLessEqual(params.depth, 2)

    def test_naive_bayes_priors(self):
        params = trainer.train_naive_bayes(self.train, {})
        self.assertAlmostEqual(params.prior_valid + params.prior_invalid, 1.0)
        self.assertTrue(all(s > 0 for s in params.stds_valid + params.stds_invalid))

    def test_tree_records_feature_count(self):
        params = trainer.train_decision_tree(self.train, {})
        self.assertEqual(params.n_features, 2)
        with self.assertRaises(SchemaMismatch):
            predict_decision_tree([0.0, 0.0, 0.0], params)

    def test_logistic_is_seeded(self):
        a = trainer.train_logistic(self.train, {"max_iter": 50})
        b = trainer.train_logistic(self.train, {"max_iter": 50})
        self.assertEqual(a, b)

    def test_exported_params_reproduce_estimators(self):
        X = np.array([s.features for s in self.train])
        y = np.array([int(s.target) for s in self.train])
        points = np.array([s.features for s in self.validation])

        logistic = LogisticRegression(max_iter=1000, random_state=42).fit(X, y)
        bayes = GaussianNB().fit(X, y)
        tree = DecisionTreeClassifier(max_depth=4, random_state=42).fit(X, y)
        gamma = trainer.svm_gamma(X)
        svm = SVC(kernel="rbf", gamma=gamma).fit(X, y)

        lr_params = trainer.export_logistic(logistic)
        nb_params = trainer.export_naive_bayes(bayes)
        tree_params = trainer.export_decision_tree(tree)
        svm_params = trainer.export_svm(svm, gamma)

        for x, p_lr, p_nb, p_tree, decision in zip(points, logistic.predict_proba(points)[:, 1],
                                                   bayes.predict_proba(points)[:, 1],
                                                   tree.predict_proba(points)[:, 1],
                                                   svm.decision_function(points)):
            self.assertAlmostEqual(predict_logistic(x, lr_params).score, p_lr, places=6)
            self.assertAlmostEqual(predict_naive_bayes(x, nb_params).score, p_nb, places=6)
            self.assertAlmostEqual(predict_decision_tree(x, tree_params).score, p_tree, places=6)
            self.assertAlmostEqual(predict_svm(x, svm_params).metadata["decision"], decision, places=6)

        self.assertEqual(len(svm_params.support_vectors), len(svm.support_))
        self.assertTrue(all(label in (-1.0, 1.0) for label in svm_params.labels))

    def test_failing_kind_is_isolated(self):
        def boom(samples, hp):
            raise RuntimeError("singular matrix")

        with mock.patch.dict(trainer.TRAINERS, {ModelKind.SVM: boom}):
            report = trainer.train_all(self.train, self.validation)

        self.assertTrue(report.success)
        failed = [r for r in report.results if not r.success]
        self.assertEqual([r.kind for r in failed], [ModelKind.SVM])
        self.assertIn("singular matrix", failed[0].message)
        self.assertEqual(len(report.ensemble), 3)
        self.assertEqual(report.ensemble.strategy, EnsembleStrategy.ADAPTIVE)
        self.assertEqual(report.feature_names, NAMES)

        prediction = report.ensemble.predict(self.validation[0].vector)
        self.assertEqual(prediction.is_valid, self.validation[0].target > 0.5)

    def test_no_samples(self):
        report = trainer.train_all([], [])
        self.assertFalse(report.success)
        self.assertIsNone(report.ensemble)


if __name__ == '__main__':
    unittest.main()
