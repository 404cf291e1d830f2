"""
Inference & ranking over the loaded plant disease model.
"""
import logging
from dataclasses import dataclass
from typing import Tuple

import torch

from .artifact import LoadedModel
from .errors import InferenceError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Prediction:
    class_index: int
    label: str
    probability: float


PredictionResult = Tuple[Prediction, ...]


def rank(probabilities, labels) -> PredictionResult:
    """Sort every class by probability, highest first; ties go to the lower index."""
    if len(probabilities) != len(labels):
        raise InferenceError(
            f"model produced {len(probabilities)} scores for {len(labels)} labels"
        )
    preds = [Prediction(i, labels[i], float(p)) for i, p in enumerate(probabilities)]
    preds.sort(key=lambda p: (-p.probability, p.class_index))
    return tuple(preds)


def classify(model: LoadedModel, tensor: torch.Tensor) -> PredictionResult:
    """Run one forward pass and rank the raw softmax output.

    The raw output tensor is released before returning; the input tensor
    belongs to the caller, which releases it in the frame that created it.
    """
    output = None
    try:
        with torch.no_grad():
            output = model.network(tensor)
        if output.dim() != 2 or output.shape[0] != 1:
            raise InferenceError(f"unexpected output shape {tuple(output.shape)}")
        probabilities = output[0].tolist()
    except RuntimeError as e:
        raise InferenceError(f"forward pass failed: {e}")
    finally:
        del output
    return rank(probabilities, model.labels)


def top_k(result: PredictionResult, k: int) -> PredictionResult:
    return result[:max(k, 0)]
