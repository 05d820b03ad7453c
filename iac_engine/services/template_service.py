"""
Template service.

Owner-scoped storage of configurations, plus AI generation of new ones.
Deployments run against the stored content.
"""
from typing import Any, Dict, List, Optional
import logging
import uuid

from iac_engine.core.errors import ExternalServiceError, GenerationError, NotFoundError, ValidationError
from iac_engine.domain.deployment_models import Template
from iac_engine.parsing.hcl_parser import parse
from iac_engine.services.credit_gate import CreditGate, get_credit_gate
from iac_engine.services.store import InMemoryStore, get_store
from iac_engine.services.template_generator import TemplateGenerator, resource_context


logger = logging.getLogger(__name__)


SUPPORTED_PROVIDERS = ("aws", "azure", "gcp", "kubernetes")
MAX_PROMPT_CHARS = 5000


class TemplateService:
    """Templates belonging to a user."""

    def __init__(
        self,
        store: Optional[InMemoryStore] = None,
        generator: Optional[TemplateGenerator] = None,
        credit_gate: Optional[CreditGate] = None
    ):
        self.store = store or get_store()
        self.generator = generator or TemplateGenerator()
        self.credit_gate = credit_gate or get_credit_gate()

    async def create_template(
        self,
        user_id: str,
        name: str,
        content: str,
        provider: str = "aws",
        description: Optional[str] = None
    ) -> Template:
        if not name or not name.strip():
            raise ValidationError("Template name is required")
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("Template content is required")
        if provider not in SUPPORTED_PROVIDERS:
            raise ValidationError(f"Valid provider is required ({', '.join(SUPPORTED_PROVIDERS)})")

        template = Template(
            id=str(uuid.uuid4()),
            user_id=user_id,
            name=name.strip(),
            content=content,
            provider=provider,
            description=description,
        )
        await self.store.put("templates", template.id, template)
        logger.info(f"Created template {template.id} for user {user_id}")
        return template

    async def get_template(self, user_id: str, template_id: str) -> Template:
        """
        Raises:
            NotFoundError: If absent or owned by someone else
        """
        template = await self.store.get("templates", template_id)
        if template is None or template.user_id != user_id:
            raise NotFoundError("Template")
        return template

    async def list_templates(self, user_id: str) -> List[Template]:
        templates = await self.store.list("templates", lambda template: template.user_id == user_id)
        templates.sort(key=lambda template: template.created_at, reverse=True)
        return templates

    async def generate_template(
        self,
        user_id: str,
        prompt: str,
        provider: str = "aws",
        name: Optional[str] = None,
        context_resources: Optional[List[Any]] = None
    ) -> Dict[str, Any]:
        """
        Generate a configuration from a description and save it as a template.

        Charges GENERATION credits; refunded only when the AI provider is unavailable.

        Raises:
            ValidationError: Bad prompt or provider
            PaymentRequiredError: Insufficient credits
            GenerationError: Output blocked or without any resource blocks
            ExternalServiceError: AI provider unavailable
        """
        if not isinstance(prompt, str) or not prompt.strip():
            raise ValidationError("Architecture description is required")
        if len(prompt) > MAX_PROMPT_CHARS:
            raise ValidationError(f"Architecture description is too long (max {MAX_PROMPT_CHARS} characters)")
        provider = (provider or "").lower()
        if provider not in SUPPORTED_PROVIDERS:
            raise ValidationError(f"Valid provider is required ({', '.join(SUPPORTED_PROVIDERS)})")

        remaining = await self.credit_gate.charge(user_id, "GENERATION")
        try:
            files = await self.generator.generate_files(prompt, provider, resource_context(context_resources or []))
        except ExternalServiceError:
            await self.credit_gate.refund(user_id, "GENERATION")
            raise

        parsed = parse(files["main.tf"])
        if not parsed.resources:
            raise GenerationError("Generated configuration contains no resource blocks.")

        template = await self.create_template(
            user_id,
            name or prompt.strip()[:60],
            files["main.tf"],
            provider,
            description=prompt.strip(),
        )
        logger.info(f"Generated template {template.id} with {len(parsed.resources)} resources")
        return {
            "template": template.to_dict(),
            "files": files,
            "resource_count": len(parsed.resources),
            "credits_remaining": remaining,
        }
