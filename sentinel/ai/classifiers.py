"""
MODULE: CLASSIFIER_ADAPTERS
CLASSIFICATION: MACHINE LEARNING / INFERENCE

DESCRIPTION:
    Four stateless inference kernels used as ensemble members:
    1. Logistic Regression   -> sigmoid(bias + w.x)
    2. Gaussian Naive Bayes  -> log-prior + sum log N(x | mu, sigma), log-sum-exp
    3. Decision Tree         -> descent on feature[index] <= threshold
    4. RBF Kernel Machine    -> sigmoid(bias + sum alpha*y*exp(-gamma*|x - sv|^2))

    Each model kind has its own typed parameter struct, decoded once from the
    persisted JSON blob. Inference never inspects raw dictionaries.

    All kernels report:
        is_valid   = score > 0.5
        confidence = score if is_valid else 1 - score
    (the decision tree reports its leaf confidence instead).
"""

import json
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional, Sequence, Tuple, Union

import numpy as np

from sentinel.errors import InvalidConfiguration, SchemaMismatch


class ModelKind(str, Enum):
    LOGISTIC_REGRESSION = "logistic_regression"
    NAIVE_BAYES = "naive_bayes"
    DECISION_TREE = "decision_tree"
    SVM = "svm"

    @classmethod
    def parse(cls, value) -> "ModelKind":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value))
        except ValueError:
            raise InvalidConfiguration(f"Unknown model kind: {value!r}") from None


@dataclass(frozen=True)
class ModelPrediction:
    model_name: str
    score: float
    is_valid: bool
    confidence: float
    metadata: Dict[str, Any] = field(default_factory=dict)


# --- PARAMETER STRUCTS (one per model kind) ---

@dataclass(frozen=True)
class LogisticParams:
    weights: Tuple[float, ...]
    bias: float

    kind = ModelKind.LOGISTIC_REGRESSION


@dataclass(frozen=True)
class NaiveBayesParams:
    prior_valid: float
    prior_invalid: float
    means_valid: Tuple[float, ...]
    means_invalid: Tuple[float, ...]
    stds_valid: Tuple[float, ...]
    stds_invalid: Tuple[float, ...]

    kind = ModelKind.NAIVE_BAYES


@dataclass(frozen=True)
class TreeLeaf:
    prediction: float
    confidence: float


@dataclass(frozen=True)
class TreeSplit:
    feature_index: int
    threshold: float
    left: "TreeNode"
    right: "TreeNode"


TreeNode = Union[TreeLeaf, TreeSplit]


@dataclass(frozen=True)
class DecisionTreeParams:
    root: TreeNode
    n_features: Optional[int] = None

    kind = ModelKind.DECISION_TREE

    @property
    def depth(self) -> int:
        def _depth(node):
            if isinstance(node, TreeLeaf):
                return 0
            return 1 + max(_depth(node.left), _depth(node.right))
        return _depth(self.root)


@dataclass(frozen=True)
class SvmParams:
    support_vectors: Tuple[Tuple[float, ...], ...]
    alphas: Tuple[float, ...]
    labels: Tuple[float, ...]
    bias: float
    gamma: float

    kind = ModelKind.SVM


ModelParams = Union[LogisticParams, NaiveBayesParams, DecisionTreeParams, SvmParams]


# --- MATH HELPERS ---

def sigmoid(z: float) -> float:
    """Overflow-free logistic function."""
    if z >= 0:
        return 1.0 / (1.0 + math.exp(-z))
    e = math.exp(z)
    return e / (1.0 + e)


def log_gaussian(x: np.ndarray, mean: np.ndarray, std: np.ndarray) -> np.ndarray:
    """Elementwise log N(x | mean, std). A non-positive std yields -inf."""
    out = np.full(x.shape, -np.inf, dtype=float)
    ok = std > 0
    var = std[ok] ** 2
    out[ok] = -0.5 * np.log(2 * np.pi * var) - 0.5 * (x[ok] - mean[ok]) ** 2 / var
    return out


def _safe_log(p: float) -> float:
    return math.log(p) if p > 0 else -math.inf


def _triple(model_name: str, score: float, **metadata) -> ModelPrediction:
    is_valid = score > 0.5
    confidence = score if is_valid else 1.0 - score
    return ModelPrediction(model_name, score, is_valid, confidence, metadata)


def _as_array(features: Sequence[float]) -> np.ndarray:
    return np.asarray(features, dtype=float)


# --- KERNELS ---

def predict_logistic(features: Sequence[float], params: LogisticParams,
                     model_name: str = "logistic_regression") -> ModelPrediction:
    x = _as_array(features)
    if len(params.weights) != len(x):
        raise SchemaMismatch(len(params.weights), len(x), model_name)
    linear = float(params.bias + np.dot(np.asarray(params.weights, dtype=float), x))
    return _triple(model_name, sigmoid(linear), algorithm=params.kind.value, linear_score=linear)


def naive_bayes_log_posteriors(features: Sequence[float],
                               params: NaiveBayesParams,
                               model_name: str = "naive_bayes") -> Tuple[float, float]:
    """Unnormalized (log P(valid|x), log P(invalid|x))."""
    x = _as_array(features)
    for arr in (params.means_valid, params.means_invalid, params.stds_valid, params.stds_invalid):
        if len(arr) != len(x):
            raise SchemaMismatch(len(arr), len(x), model_name)

    log_valid = _safe_log(params.prior_valid) + float(np.sum(log_gaussian(
        x, np.asarray(params.means_valid, dtype=float), np.asarray(params.stds_valid, dtype=float))))
    log_invalid = _safe_log(params.prior_invalid) + float(np.sum(log_gaussian(
        x, np.asarray(params.means_invalid, dtype=float), np.asarray(params.stds_invalid, dtype=float))))
    return log_valid, log_invalid


def predict_naive_bayes(features: Sequence[float], params: NaiveBayesParams,
                        model_name: str = "naive_bayes") -> ModelPrediction:
    log_valid, log_invalid = naive_bayes_log_posteriors(features, params, model_name)

    if log_valid == -math.inf and log_invalid == -math.inf:
        # Both classes ruled out by the likelihood: fall back on the priors alone.
        total = params.prior_valid + params.prior_invalid
        prob_valid = params.prior_valid / total if total > 0 else 0.5
    else:
        top = max(log_valid, log_invalid)
        p_valid = math.exp(log_valid - top)
        p_invalid = math.exp(log_invalid - top)
        prob_valid = p_valid / (p_valid + p_invalid)

    return _triple(model_name, prob_valid, algorithm=params.kind.value,
                   log_prob_valid=log_valid, log_prob_invalid=log_invalid)


def predict_decision_tree(features: Sequence[float], params: DecisionTreeParams,
                          model_name: str = "decision_tree") -> ModelPrediction:
    node = params.root
    n = len(features)
    if params.n_features is not None and params.n_features != n:
        raise SchemaMismatch(params.n_features, n, model_name)
    depth = 0
    while isinstance(node, TreeSplit):
        if not 0 <= node.feature_index < n:
            raise SchemaMismatch(node.feature_index + 1, n, model_name)
        node = node.left if features[node.feature_index] <= node.threshold else node.right
        depth += 1
    return ModelPrediction(
        model_name=model_name,
        score=node.prediction,
        is_valid=node.prediction > 0.5,
        confidence=node.confidence,
        metadata={"algorithm": params.kind.value, "depth": depth},
    )


def predict_svm(features: Sequence[float], params: SvmParams,
                model_name: str = "svm") -> ModelPrediction:
    x = _as_array(features)
    decision = float(params.bias)
    if params.support_vectors:
        sv = np.asarray(params.support_vectors, dtype=float)
        if sv.ndim != 2 or sv.shape[1] != len(x):
            raise SchemaMismatch(sv.shape[-1], len(x), model_name)
        sq_dist = np.sum((sv - x) ** 2, axis=1)
        kernel = np.exp(-params.gamma * sq_dist)
        coeffs = np.asarray(params.alphas, dtype=float) * np.asarray(params.labels, dtype=float)
        decision += float(np.dot(coeffs, kernel))
    return _triple(model_name, sigmoid(decision), algorithm=params.kind.value, decision=decision)


KERNELS: Dict[ModelKind, Callable[..., ModelPrediction]] = {
    ModelKind.LOGISTIC_REGRESSION: predict_logistic,
    ModelKind.NAIVE_BAYES: predict_naive_bayes,
    ModelKind.DECISION_TREE: predict_decision_tree,
    ModelKind.SVM: predict_svm,
}


def classify(features: Sequence[float], params: ModelParams, model_name: str) -> ModelPrediction:
    """Dispatches to the kernel matching the params variant."""
    return KERNELS[params.kind](features, params, model_name)


# --- BLOB CODEC ---

def _node_to_dict(node: TreeNode) -> Dict[str, Any]:
    if isinstance(node, TreeLeaf):
        return {"prediction": node.prediction, "confidence": node.confidence}
    return {
        "feature_index": node.feature_index,
        "threshold": node.threshold,
        "left": _node_to_dict(node.left),
        "right": _node_to_dict(node.right),
    }


def _node_from_dict(data: Dict[str, Any]) -> TreeNode:
    if "feature_index" in data:
        return TreeSplit(
            feature_index=int(data["feature_index"]),
            threshold=float(data["threshold"]),
            left=_node_from_dict(data["left"]),
            right=_node_from_dict(data["right"]),
        )
    return TreeLeaf(float(data["prediction"]), float(data["confidence"]))


def encode_params(params: ModelParams) -> Dict[str, Any]:
    if isinstance(params, LogisticParams):
        body = {"weights": list(params.weights), "bias": params.bias}
    elif isinstance(params, NaiveBayesParams):
        body = {
            "class_priors": {"valid": params.prior_valid, "invalid": params.prior_invalid},
            "feature_means": {"valid": list(params.means_valid), "invalid": list(params.means_invalid)},
            "feature_stds": {"valid": list(params.stds_valid), "invalid": list(params.stds_invalid)},
        }
    elif isinstance(params, DecisionTreeParams):
        body = {"tree": _node_to_dict(params.root)}
        if params.n_features is not None:
            body["n_features"] = params.n_features
    elif isinstance(params, SvmParams):
        body = {
            "support_vectors": [list(sv) for sv in params.support_vectors],
            "alphas": list(params.alphas),
            "labels": list(params.labels),
            "bias": params.bias,
            "gamma": params.gamma,
        }
    else:
        raise InvalidConfiguration(f"Unsupported params type: {type(params).__name__}")
    body["algorithm"] = params.kind.value
    return body


def decode_params(kind, blob: Union[str, Dict[str, Any]]) -> ModelParams:
    """Decodes a persisted parameter blob into its typed struct."""
    kind = ModelKind.parse(kind)
    try:
        data = json.loads(blob) if isinstance(blob, str) else blob
        if kind is ModelKind.LOGISTIC_REGRESSION:
            return LogisticParams(tuple(float(w) for w in data["weights"]), float(data["bias"]))
        if kind is ModelKind.NAIVE_BAYES:
            priors, means, stds = data["class_priors"], data["feature_means"], data["feature_stds"]
            return NaiveBayesParams(
                prior_valid=float(priors.get("valid", 0.5)),
                prior_invalid=float(priors.get("invalid", 0.5)),
                means_valid=tuple(float(v) for v in means["valid"]),
                means_invalid=tuple(float(v) for v in means["invalid"]),
                stds_valid=tuple(float(v) for v in stds["valid"]),
                stds_invalid=tuple(float(v) for v in stds["invalid"]),
            )
        if kind is ModelKind.DECISION_TREE:
            n_features = data.get("n_features")
            return DecisionTreeParams(_node_from_dict(data["tree"]),
                                      int(n_features) if n_features is not None else None)
        return SvmParams(
            support_vectors=tuple(tuple(float(v) for v in sv) for sv in data["support_vectors"]),
            alphas=tuple(float(a) for a in data["alphas"]),
            labels=tuple(float(y) for y in data["labels"]),
            bias=float(data["bias"]),
            gamma=float(data["gamma"]),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise InvalidConfiguration(f"Malformed {kind.value} parameters: {e}") from e
