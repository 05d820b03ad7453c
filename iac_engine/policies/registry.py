"""
Policy registry.

Each policy is a plain function `(PolicyContext) -> List[Finding]` registered
under a unique code with the @register_policy decorator. The engine looks
evaluators up by code, so new rules never touch the engine itself.
"""
from typing import Callable, Dict, List, Optional
from dataclasses import dataclass

from iac_engine.domain.hcl_models import ParsedConfiguration
from iac_engine.domain.policy_models import Finding, Policy, PolicyCategory, Severity


@dataclass
class PolicyContext:
    """Everything an evaluator may look at."""
    parsed: ParsedConfiguration
    provider: str
    raw_content: str = ""
    template_id: Optional[str] = None


Evaluator = Callable[[PolicyContext], List[Finding]]


@dataclass
class PolicyDefinition:
    code: str
    name: str
    description: str
    provider: str
    category: PolicyCategory
    severity: Severity
    check: Evaluator
    is_built_in: bool = True

    def to_policy(self) -> Policy:
        """Catalog row for this definition (active by default)."""
        return Policy(
            code=self.code,
            name=self.name,
            description=self.description,
            provider=self.provider,
            category=self.category,
            severity=self.severity,
            is_built_in=self.is_built_in,
        )


# Built-in definitions in registration order, keyed by code
_REGISTRY: Dict[str, PolicyDefinition] = {}


def register_policy(
    code: str,
    name: str,
    description: str,
    category: PolicyCategory,
    severity: Severity,
    provider: str = "aws",
) -> Callable[[Evaluator], Evaluator]:
    """
    Decorator registering an evaluator as a built-in policy.

    Raises:
        ValueError: If the code is already registered
    """
    def decorator(check: Evaluator) -> Evaluator:
        if code in _REGISTRY:
            raise ValueError(f"Policy code {code} is already registered")
        _REGISTRY[code] = PolicyDefinition(
            code=code,
            name=name,
            description=description,
            provider=provider,
            category=category,
            severity=severity,
            check=check,
        )
        return check

    return decorator


def _load_builtin_modules() -> None:
    # Importing the catalog modules runs their @register_policy decorators
    from iac_engine.policies import aws_cost, aws_security  # noqa: F401


def builtin_policy_definitions() -> List[PolicyDefinition]:
    """All built-in policies in catalog order."""
    _load_builtin_modules()
    return list(_REGISTRY.values())


def get_policy_definition(code: str) -> Optional[PolicyDefinition]:
    _load_builtin_modules()
    return _REGISTRY.get(code)
