"""
Rules package.

Defines the rule, change-event and execution-log models together with the
pure condition evaluator and the trigger matcher. Condition groups are
AND-combined internally and OR-combined with each other; an empty group list
matches unconditionally.

Modules of interest:
- models: Data classes and API models.
- conditions: Operator semantics and type coercion.
- matcher: Trigger/table/tenant checks and per-rule failure isolation.
"""
