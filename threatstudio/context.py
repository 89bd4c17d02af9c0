"""External collaborators available to node handlers during a run."""
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

from threatstudio.config import Settings, get_settings
from threatstudio.findings import extract_findings
from threatstudio.inference import ModelClient
from threatstudio.models import Finding
from threatstudio.templates import PromptTemplate, TemplateStore

InvokeModel = Callable[..., Awaitable[str]]
GetTemplate = Callable[[str], Optional[PromptTemplate]]
ExtractFindings = Callable[[str, str, str], List[Finding]]


@dataclass
class ExecutionContext:
    """invoke_model(model_id, prompt, system_prompt, image_base64=None,
    provider_config=None) is the only call that suspends a run."""
    invoke_model: InvokeModel
    get_template: GetTemplate
    extract_findings: ExtractFindings

    @classmethod
    def default(
        cls,
        settings: Optional[Settings] = None,
        templates: Optional[TemplateStore] = None,
    ) -> "ExecutionContext":
        settings = settings or get_settings()
        templates = templates or TemplateStore()
        return cls(
            invoke_model=ModelClient(settings).invoke,
            get_template=templates.get_template,
            extract_findings=extract_findings,
        )
