"""
MODULE: MODEL_TRAINER

DESCRIPTION:
    Fits the four fixed-shape model kinds on processed event features with
    scikit-learn, exports each fitted estimator into the typed parameter
    struct the inference kernels read, and assembles the survivors into an
    adaptive ensemble.

    - Logistic regression: LogisticRegression -> coef_ / intercept_.
    - Gaussian naive Bayes: GaussianNB -> class_prior_ / theta_ / var_.
    - Decision tree: DecisionTreeClassifier -> tree_ walked into split/leaf nodes.
    - RBF kernel machine: SVC(kernel="rbf") -> support_vectors_ / dual_coef_ / intercept_.

    Estimators never leave this module; only the exported params are stored.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional, Sequence, Tuple

import numpy as np
from sklearn.linear_model import LogisticRegression
from sklearn.naive_bayes import GaussianNB
from sklearn.svm import SVC
from sklearn.tree import DecisionTreeClassifier

from sentinel.ai.classifiers import (
    DecisionTreeParams,
    LogisticParams,
    ModelKind,
    ModelParams,
    NaiveBayesParams,
    SvmParams,
    TreeLeaf,
    TreeNode,
    TreeSplit,
    classify,
)
from sentinel.ai.ensemble import EnsembleScorer, EnsembleStrategy
from sentinel.models.samples import ProcessedFeatures

logger = logging.getLogger("SENTINEL.AI.TRAINER")

DEFAULT_KINDS = (
    ModelKind.LOGISTIC_REGRESSION,
    ModelKind.NAIVE_BAYES,
    ModelKind.DECISION_TREE,
    ModelKind.SVM,
)

SEED = 42


@dataclass
class TrainingResult:
    kind: ModelKind
    success: bool
    train_accuracy: float
    validation_accuracy: float
    params: Optional[ModelParams]
    message: str
    training_time_s: float


@dataclass
class TrainingReport:
    success: bool
    results: List[TrainingResult]
    ensemble: Optional[EnsembleScorer]
    best_accuracy: float
    best_kind: Optional[ModelKind]
    message: str
    total_time_s: float
    feature_names: Tuple[str, ...] = field(default_factory=tuple)


def _matrix(samples: Sequence[ProcessedFeatures]) -> Tuple[np.ndarray, np.ndarray]:
    if not samples:
        raise ValueError("No samples to train on")
    X = np.array([s.features for s in samples], dtype=float)
    y = np.array([1 if s.target > 0.5 else 0 for s in samples], dtype=int)
    return X, y


def _class_index(classes, label: int) -> Optional[int]:
    matches = np.flatnonzero(np.asarray(classes) == label)
    return int(matches[0]) if len(matches) else None


# --- EXPORT (fitted estimator -> typed params) ---

def export_logistic(model: LogisticRegression) -> LogisticParams:
    # Binary fit: coef_ row 0 scores classes_[1], the valid class.
    return LogisticParams(tuple(float(w) for w in model.coef_[0]), float(model.intercept_[0]))


def export_naive_bayes(model: GaussianNB) -> NaiveBayesParams:
    d = model.theta_.shape[1]

    def _class(label):
        i = _class_index(model.classes_, label)
        if i is None:
            return 0.0, (0.0,) * d, (1.0,) * d
        return (float(model.class_prior_[i]),
                tuple(float(m) for m in model.theta_[i]),
                tuple(float(np.sqrt(v)) for v in model.var_[i]))

    prior_valid, means_valid, stds_valid = _class(1)
    prior_invalid, means_invalid, stds_invalid = _class(0)
    return NaiveBayesParams(prior_valid, prior_invalid, means_valid, means_invalid,
                            stds_valid, stds_invalid)


def export_decision_tree(model: DecisionTreeClassifier) -> DecisionTreeParams:
    tree = model.tree_
    positive = _class_index(model.classes_, 1)

    def _node(i: int) -> TreeNode:
        left, right = int(tree.children_left[i]), int(tree.children_right[i])
        if left == right:
            counts = np.asarray(tree.value[i][0], dtype=float)
            total = float(counts.sum())
            p = float(counts[positive]) / total if positive is not None and total > 0 else 0.0
            return TreeLeaf(p, max(p, 1.0 - p))
        # sklearn routes x[feature] <= threshold to the left child, as the kernel does
        return TreeSplit(int(tree.feature[i]), float(tree.threshold[i]), _node(left), _node(right))

    return DecisionTreeParams(_node(0), int(model.n_features_in_))


def export_svm(model: SVC, gamma: float) -> SvmParams:
    # dual_coef_ holds label * alpha, signed so that positive favours classes_[1].
    dual = np.asarray(model.dual_coef_[0], dtype=float)
    return SvmParams(
        support_vectors=tuple(tuple(float(v) for v in row) for row in model.support_vectors_),
        alphas=tuple(float(a) for a in np.abs(dual)),
        labels=tuple(1.0 if c >= 0 else -1.0 for c in dual),
        bias=float(model.intercept_[0]),
        gamma=float(gamma),
    )


# --- FIT ---

def train_logistic(samples: Sequence[ProcessedFeatures], hp: Mapping[str, Any]) -> LogisticParams:
    X, y = _matrix(samples)
    model = LogisticRegression(
        C=float(hp.get("C", 1.0)),
        max_iter=int(hp.get("max_iter", 1000)),
        random_state=int(hp.get("seed", SEED)),
    )
    model.fit(X, y)
    return export_logistic(model)


def train_naive_bayes(samples: Sequence[ProcessedFeatures], hp: Mapping[str, Any]) -> NaiveBayesParams:
    X, y = _matrix(samples)
    model = GaussianNB(var_smoothing=float(hp.get("var_smoothing", 1e-9)))
    model.fit(X, y)
    return export_naive_bayes(model)


def train_decision_tree(samples: Sequence[ProcessedFeatures], hp: Mapping[str, Any]) -> DecisionTreeParams:
    X, y = _matrix(samples)
    model = DecisionTreeClassifier(
        max_depth=int(hp.get("max_depth", 10)),
        min_samples_leaf=int(hp.get("min_samples_leaf", 5)),
        random_state=int(hp.get("seed", SEED)),
    )
    model.fit(X, y)
    return export_decision_tree(model)


def svm_gamma(X: np.ndarray, gamma="scale") -> float:
    """sklearn's "scale" heuristic resolved to a number the kernel can store."""
    if gamma != "scale":
        return float(gamma)
    variance = float(X.var())
    return 1.0 / (X.shape[1] * variance) if variance > 0 else 1.0


def train_svm(samples: Sequence[ProcessedFeatures], hp: Mapping[str, Any]) -> SvmParams:
    X, y = _matrix(samples)
    gamma = svm_gamma(X, hp.get("gamma", "scale"))
    model = SVC(kernel="rbf", C=float(hp.get("C", 1.0)), gamma=gamma,
                random_state=int(hp.get("seed", SEED)))
    model.fit(X, y)
    return export_svm(model, gamma)


TRAINERS = {
    ModelKind.LOGISTIC_REGRESSION: train_logistic,
    ModelKind.NAIVE_BAYES: train_naive_bayes,
    ModelKind.DECISION_TREE: train_decision_tree,
    ModelKind.SVM: train_svm,
}


def evaluate(samples: Sequence[ProcessedFeatures], params: ModelParams) -> float:
    """Fraction of samples whose is_valid verdict matches the target class."""
    if not samples:
        return 0.0
    correct = 0
    for s in samples:
        verdict = classify(s.features, params, params.kind.value).is_valid
        if verdict == (s.target > 0.5):
            correct += 1
    return correct / len(samples)


def train_model(kind, train: Sequence[ProcessedFeatures], validation: Sequence[ProcessedFeatures],
                hyperparameters: Optional[Mapping[str, Any]] = None) -> TrainingResult:
    kind = ModelKind.parse(kind)
    start = time.time()
    params = TRAINERS[kind](train, hyperparameters or {})
    train_acc = evaluate(train, params)
    val_acc = evaluate(validation, params) if validation else train_acc
    return TrainingResult(kind, True, train_acc, val_acc, params, "ok", time.time() - start)


def train_all(train: Sequence[ProcessedFeatures], validation: Sequence[ProcessedFeatures],
              kinds: Sequence = DEFAULT_KINDS,
              hyperparameters: Optional[Mapping[str, Mapping[str, Any]]] = None,
              create_ensemble: bool = True) -> TrainingReport:
    """
    Trains every requested kind; a failing kind is recorded and skipped.
    """
    start = time.time()
    hyperparameters = hyperparameters or {}
    results: List[TrainingResult] = []

    logger.info(f"Training {len(kinds)} algorithms on {len(train)} samples")
    for kind in kinds:
        kind = ModelKind.parse(kind)
        try:
            result = train_model(kind, train, validation, hyperparameters.get(kind.value))
            logger.info(f"{kind.value}: validation accuracy {result.validation_accuracy * 100:.1f}%")
        except Exception as e:
            logger.error(f"Training {kind.value} failed: {e}")
            result = TrainingResult(kind, False, 0.0, 0.0, None, f"error: {e}", 0.0)
        results.append(result)

    ok = sorted((r for r in results if r.success), key=lambda r: r.validation_accuracy, reverse=True)
    names = tuple(train[0].vector.names) if train else ()
    if not ok:
        return TrainingReport(False, results, None, 0.0, None,
                              "No algorithm trained successfully", time.time() - start, names)

    ensemble = None
    if create_ensemble and len(ok) > 1:
        ensemble = EnsembleScorer(EnsembleStrategy.ADAPTIVE)
        for r in ok:
            ensemble.add_model(r.kind.value, r.params, r.validation_accuracy, feature_names=names)

    best = ok[0]
    return TrainingReport(True, results, ensemble, best.validation_accuracy, best.kind,
                          "Training complete", time.time() - start, names)
