"""Verification plane: validation gates and the ordered pipeline that runs them."""

from autodispatch.verification_plane.gates import (
    CommandResult,
    CommandRunner,
    ConflictGate,
    FunctionalTestGate,
    Gate,
    GateContext,
    GateOutcome,
    IntegrationGate,
    LocalCommandRunner,
    QualityGate,
    RegressionGate,
    TestCommands,
    TestScope,
    run_test_scope,
    select_test_scope,
    title_keywords,
)
from autodispatch.verification_plane.pipeline import ValidationPipeline, ValidationResult

__all__ = [
    "CommandResult",
    "CommandRunner",
    "ConflictGate",
    "FunctionalTestGate",
    "Gate",
    "GateContext",
    "GateOutcome",
    "IntegrationGate",
    "LocalCommandRunner",
    "QualityGate",
    "RegressionGate",
    "TestCommands",
    "TestScope",
    "ValidationPipeline",
    "ValidationResult",
    "run_test_scope",
    "select_test_scope",
    "title_keywords",
]
