from .priors import ActionPriorEstimator, softmax, uniform_priors
from .evaluator import Evaluation, StateEvaluator

__all__ = ['ActionPriorEstimator', 'softmax', 'uniform_priors', 'Evaluation', 'StateEvaluator']
