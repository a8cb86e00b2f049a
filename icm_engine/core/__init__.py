from .derivation import DerivationResult, MetricDerivationEngine, MetricStatus, derive
from .evaluator import Evaluation, evaluate, evaluate_all, find_band_index, next_band_index
from .exports import export_payroll_csv, write_results_workbook
from .lifecycle import Audience, LifecycleService, TransitionResult, can_act, can_view
from .observers import BatchObserver, CallbackObserver, notify_observers
from .reconciliation import COMPONENT_MATCH_EPSILON, TOTAL_MATCH_EPSILON, reconcile, reconcile_with_settings
from .runner import CalculationRunner, RunResult
from .summary import summarize
from .trajectory import compute_entity_trajectory, compute_trajectory
