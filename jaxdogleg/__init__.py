from . import utils as utils
from ._dogleg import StepKind as StepKind
from ._dogleg import compute_cauchy_step as compute_cauchy_step
from ._dogleg import compute_dogleg_step as compute_dogleg_step
from ._dogleg import compute_predicted_reduction as compute_predicted_reduction
from ._gradient_check import GradientCheckResult as GradientCheckResult
from ._gradient_check import check_gradient as check_gradient
from ._linear_solvers import CholmodSolver as CholmodSolver
from ._linear_solvers import DenseCholeskySolver as DenseCholeskySolver
from ._linear_solvers import LinearSolverBase as LinearSolverBase
from ._linear_solvers import RegularizationConfig as RegularizationConfig
from ._operating_point import CachedStep as CachedStep
from ._operating_point import EvaluateFn as EvaluateFn
from ._operating_point import Jacobian as Jacobian
from ._operating_point import LinearSolverType as LinearSolverType
from ._operating_point import OperatingPoint as OperatingPoint
from ._solvers import DoglegResult as DoglegResult
from ._solvers import DoglegSolver as DoglegSolver
from ._solvers import SolveSummary as SolveSummary
from ._solvers import SolverContext as SolverContext
from ._solvers import StepOutcome as StepOutcome
from ._solvers import TerminationConfig as TerminationConfig
from ._solvers import TerminationReason as TerminationReason
from ._solvers import TrustRegionConfig as TrustRegionConfig
from ._solvers import optimize as optimize
from ._solvers import optimize_dense as optimize_dense
from ._sparse_matrices import SparseCsrCoordinates as SparseCsrCoordinates
from ._sparse_matrices import SparseCsrMatrix as SparseCsrMatrix
