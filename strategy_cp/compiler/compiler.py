"""
Strategy compiler pipeline.

Runs the four stages over a spec:

1. normalize   - canonical identifiers, kinds, ordering and values
2. resolve     - references, static types and rule dependency graph
3. validate    - risk constraint consistency, caps and warnings
4. fold/emit   - constant folding, topological order, fingerprint

Each stage reports diagnostics instead of failing fast, except for
structural errors after which the remaining stages are skipped. Any error
diagnostic means no plan is produced. Compilation is pure: it never
mutates its input and touches no shared state, so it may run in parallel.
"""

from typing import Optional

from ..config.defaults import CompilerParams
from ..logging.config import get_compiler_logger, log_compilation
from ..models.plan import CompilationResult, Diagnostic
from ..models.spec import StrategySpec
from .constraints import validate_constraints
from .emit import check_folding, emit_plan
from .normalize import STRUCTURAL_CODES, normalize_spec
from .resolve import resolve_references

logger = get_compiler_logger(__name__)


def _has_structural_error(diagnostics: list[Diagnostic]) -> bool:
    return any(d.is_error and d.code in STRUCTURAL_CODES for d in diagnostics)


class Compiler:
    """Compiles StrategySpec objects into ExecutionPlan objects."""

    def __init__(self, params: Optional[CompilerParams] = None):
        self.params = params or CompilerParams()
        self.logger = logger

    @property
    def version(self) -> str:
        return self.params.version

    def compile(self, spec: StrategySpec) -> CompilationResult:
        """
        Compile a spec.

        Args:
            spec: Strategy spec to compile

        Returns:
            CompilationResult holding the plan (None on any error) and
            every diagnostic produced
        """
        normalized, diagnostics = normalize_spec(spec)

        if _has_structural_error(diagnostics):
            return self._finish(spec, CompilationResult.failed(diagnostics))

        resolution = resolve_references(normalized, self.params.allowed_features)
        diagnostics.extend(resolution.diagnostics)
        if not resolution.has_errors:
            diagnostics.extend(check_folding(normalized))

        envelope, constraint_diagnostics = validate_constraints(normalized, self.params)
        diagnostics.extend(constraint_diagnostics)

        if any(d.is_error for d in diagnostics) or envelope is None:
            return self._finish(spec, CompilationResult.failed(diagnostics))

        plan = emit_plan(normalized, resolution.dependencies, envelope, self.params.version)
        return self._finish(spec, CompilationResult.succeeded(plan, diagnostics))

    def _finish(self, spec: StrategySpec, result: CompilationResult) -> CompilationResult:
        log_compilation(
            self.logger,
            strategy_id=spec.strategy_id,
            version=spec.version,
            fingerprint=result.fingerprint,
            errors=len(result.errors),
            warnings=len(result.warnings),
            context={"codes": [d.code for d in result.diagnostics]} if result.diagnostics else None,
        )
        return result


def compile_spec(spec: StrategySpec, params: Optional[CompilerParams] = None) -> CompilationResult:
    """Compile a spec with the given (or default) compiler parameters."""
    return Compiler(params).compile(spec)
