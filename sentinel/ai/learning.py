"""
MODULE: EVENT_LEARNING_LOOP

DESCRIPTION:
    Closes the loop between validation and training:
    1. Every event sample the orchestrator validates is kept in the ledger.
    2. The user labels some of them (real event / phone handling).
    3. Once enough labels accumulate, the four model kinds are refitted on
       the labelled set and the winners are stored as the active models.

    Fresh statistics are computed from the labelled set on every retrain;
    the caller swaps them in together with the new models.
"""

import logging
from typing import Dict, Sequence, Tuple

from sentinel.ai.trainer import TrainingReport, train_all
from sentinel.features.engineer import FeatureEngineer, balance_dataset, split_train_test
from sentinel.features.statistics import FeatureStatistics
from sentinel.models.samples import ProcessedFeatures

logger = logging.getLogger("SENTINEL.AI.LEARNING")


def fit_and_store(db, name_prefix: str, processed: Sequence[ProcessedFeatures],
                  seed: int = 42) -> Tuple[TrainingReport, Dict[str, int]]:
    """
    Balances, splits and trains every kind, then stores each successful
    model as the active one for its kind and schema.
    Returns the report and the ledger id of every stored model by name.
    """
    balanced = balance_dataset(processed, seed=seed)
    train, validation = split_train_test(balanced, train_ratio=0.8, seed=seed)
    report = train_all(train, validation)

    model_ids: Dict[str, int] = {}
    for result in report.results:
        if not result.success:
            continue
        name = f"{name_prefix}_{result.kind.value}"
        model_ids[name] = db.save_trained_model(
            name=name,
            kind=result.kind,
            params=result.params,
            feature_names=report.feature_names,
            training_accuracy=result.train_accuracy,
            validation_accuracy=result.validation_accuracy,
            sample_count=len(train),
            set_active=True,
        )
    return report, model_ids


def retrain_event_models(db, seed: int = 42) -> Tuple[TrainingReport, Dict[str, int], FeatureStatistics]:
    """Refits the event ensemble on every user-labelled sample in the ledger."""
    samples = db.load_training_samples(has_user_feedback=True)
    logger.info(f"Retraining event models on {len(samples)} labelled samples")

    engineer = FeatureEngineer()
    processed = engineer.process_batch(samples)
    report, model_ids = fit_and_store(db, "event", processed, seed=seed)
    statistics, _ = engineer.store.snapshot()
    if report.success:
        db.save_feature_statistics(statistics)
    else:
        logger.warning(f"Retraining produced no model: {report.message}")
    return report, model_ids, statistics


class RetrainPolicy:
    """
    Due once at least `min_samples` labels exist and `retrain_every` new
    labels arrived since the last training.
    """

    def __init__(self, config, labelled_at_last_training: int = 0):
        self.config = config
        self.last = labelled_at_last_training

    def due(self, labelled: int) -> bool:
        if not self.config.auto_train:
            return False
        return labelled >= self.config.min_samples and labelled - self.last >= self.config.retrain_every

    def mark(self, labelled: int):
        self.last = labelled
