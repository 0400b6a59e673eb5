"""
Intermediate Representation (IR) for analysis provenance.

Every public service operation that follows the 3-tuple contract returns an
``AnalysisStep`` alongside its result and statistics. The step records what
was run, with which parameters, and a short code template that re-runs the
same call, so a QC session can be audited and reproduced.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class ParameterSpec:
    """Schema for a single parameter of an analysis step."""

    param_type: str
    papermill_injectable: bool = False
    default_value: Any = None
    required: bool = False
    validation_rule: Optional[str] = None
    description: str = ""


@dataclass
class AnalysisStep:
    """
    Provenance record for one analysis operation.

    Attributes:
        operation: Dotted operation name (e.g. "outbredqc.qc.sex_check")
        tool_name: Service method that produced the result
        description: Human-readable description
        library: Primary library used for the computation
        code_template: Jinja-style template that re-runs the operation
        imports: Import lines required by the template
        parameters: Parameter values actually used
        parameter_schema: ParameterSpec per parameter
        input_entities: Names of consumed objects
        output_entities: Names of produced objects
        execution_context: Free-form context (method, thresholds source, ...)
    """

    operation: str
    tool_name: str
    description: str
    library: str
    code_template: str = ""
    imports: List[str] = field(default_factory=list)
    parameters: Dict[str, Any] = field(default_factory=dict)
    parameter_schema: Dict[str, ParameterSpec] = field(default_factory=dict)
    input_entities: List[str] = field(default_factory=list)
    output_entities: List[str] = field(default_factory=list)
    execution_context: Dict[str, Any] = field(default_factory=dict)
    validates_on_export: bool = True
    requires_validation: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a plain dictionary."""
        return asdict(self)
