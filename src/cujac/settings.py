"""Emitter configuration shared by every generated kernel of a model."""

from typing import Optional

import attrs

from cujac._utils import getype_validator, opt_getype_validator


BASE_TYPE_PRECISION = {"double": 15, "float": 6}


@attrs.define(frozen=True)
class EmitterSettings:
    """Formatting limits handed to the lowering primitive.

    Attributes
    ----------
    max_assignments_per_function : int
        Statement ceiling for one generated function. Longer bodies are
        split into helper functions sharing a work array.
    max_operations_per_assignment : int
        Ceiling on elementary operations in one assignment. Heavier
        expressions are broken up into temporaries.
    parameter_precision : int, optional
        Significant digits printed for floating point literals. ``None``
        selects the precision of the model's base type.
    """

    max_assignments_per_function: int = attrs.field(
        default=20000, validator=getype_validator(int, 1)
    )
    max_operations_per_assignment: int = attrs.field(
        default=1000, validator=getype_validator(int, 1)
    )
    parameter_precision: Optional[int] = attrs.field(
        default=None, validator=opt_getype_validator(int, 1)
    )

    def precision_for(self, base_type_name: str) -> int:
        """Return the literal precision to use for ``base_type_name``."""
        if self.parameter_precision is not None:
            return self.parameter_precision
        return BASE_TYPE_PRECISION[base_type_name]
