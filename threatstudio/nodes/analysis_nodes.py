"""Analysis nodes: STRIDE and STPA-SEC threat analysis through a remote model.

Both kinds share one behavior: merge upstream text/diagram inputs into the
template variables, render the prompt, await the model, then extract
findings from the raw response.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional, Tuple

from threatstudio.config import DEFAULT_MODEL_ID
from threatstudio.models import Finding, NodeExecutionError
from threatstudio.node_api import node, Port, logger
from threatstudio.templates import add_image_context, build_system_prompt, process_template

DIAGRAM_COMPONENTS = (
    "The architecture components and their relationships are shown in the "
    "provided diagram. Please analyze all visible components, connections, "
    "data flows, and trust boundaries."
)
DIAGRAM_SUPPLEMENT = (
    "Additional components and relationships are shown in the provided "
    "architecture diagram."
)
DEFAULT_COMPONENTS = "Please analyze the system architecture based on the provided description."
FALLBACK_EXCERPT_LENGTH = 500

_ANALYSIS_PORTS_IN = [
    Port("diagram_data", "diagram_data"),
    Port("text_data", "text_data"),
]
_ANALYSIS_PORTS_OUT = [Port("findings_data", "findings_data")]


def _analysis_defaults(template_id: str) -> dict:
    return {
        "model_id": DEFAULT_MODEL_ID,
        "temperature": 0.7,
        "prompt_template": template_id,
        "system_description": "",
        "ollama_config": None,
    }


def build_variables(system_description: str, inputs) -> Tuple[dict, Optional[str]]:
    """Fold upstream text and diagram results into template variables.

    Returns the variables plus the diagram's base64 payload (or None).
    """
    description = system_description or ""
    components = ""
    image = None

    for item in inputs:
        value = item.value
        if not isinstance(value, dict):
            continue
        if value.get("type") == "text":
            data = value.get("data") or {}
            details = (
                f"System Name: {data.get('system_name', '')}\n"
                f"Description: {data.get('description', '')}\n"
                f"Context: {data.get('context', '')}"
            )
            description = f"{description}\n\nAdditional Details:\n{details}" if description else details
            components = data.get("description") or components
        elif value.get("type") == "diagram":
            image = value.get("base64")
            if components:
                components = f"{components}\n\n{DIAGRAM_SUPPLEMENT}"
            else:
                components = DIAGRAM_COMPONENTS

    components = components or DEFAULT_COMPONENTS
    first_line = description.split("\n")[0] if description else ""
    system_name = first_line.replace("System Name: ", "") or "System"

    variables = {
        "system_description": description,
        "architecture_components": components,
        "control_structure": components,
        "system_name": system_name,
        "components": components,
        "data_flows": "Data flows as shown in the architecture",
    }
    return variables, image


def fallback_finding(raw_response: str, analysis_type: str, model_id: str) -> Finding:
    """Single generic finding used when nothing structured could be extracted."""
    return Finding(
        id=f"finding_{uuid.uuid4().hex[:12]}_1",
        title="Security Analysis Results",
        description=raw_response[:FALLBACK_EXCERPT_LENGTH],
        severity="medium",
        category="General" if analysis_type == "stride" else "General Analysis",
        model_source=model_id,
        created_at=datetime.now(timezone.utc).isoformat(),
    )


async def run_analysis(node, inputs, context, analysis_type: str):
    config = node.config
    model_id = config.get("model_id")
    if not model_id:
        raise NodeExecutionError("Model ID is required for analysis")

    template_id = config.get("prompt_template")
    template = context.get_template(template_id) if template_id else None
    if template is None:
        raise NodeExecutionError(f"Template {template_id} not found")

    variables, image = build_variables(config.get("system_description"), inputs)
    if not variables["system_description"] and not image:
        raise NodeExecutionError("No input data available for analysis")

    prompt = add_image_context(process_template(template, variables), image is not None)
    system_prompt = build_system_prompt(analysis_type)

    logger.info(f"Template '{template.id}' rendered ({len(prompt)} chars)")
    raw_response = await context.invoke_model(
        model_id,
        prompt,
        system_prompt,
        image_base64=image,
        provider_config=config.get("ollama_config"),
    )

    findings = list(context.extract_findings(raw_response, analysis_type, model_id))
    logger.info(f"Extracted {len(findings)} findings")
    if not findings:
        logger.warn("No structured findings extracted, creating basic finding")
        findings.append(fallback_finding(raw_response, analysis_type, model_id))

    return {
        "type": "findings",
        "findings": findings,
        "raw_response": raw_response,
        "model_id": model_id,
    }


@node(
    kind="analysis-stride",
    label="STRIDE Analysis",
    category="ANALYSIS",
    description="STRIDE threat modeling",
    ports_in=_ANALYSIS_PORTS_IN,
    ports_out=_ANALYSIS_PORTS_OUT,
    default_config=_analysis_defaults("stride-default"),
)
async def analysis_stride(node, inputs, context):
    return await run_analysis(node, inputs, context, "stride")


@node(
    kind="analysis-stpa-sec",
    label="STPA-SEC Analysis",
    category="ANALYSIS",
    description="System-theoretic analysis",
    ports_in=_ANALYSIS_PORTS_IN,
    ports_out=_ANALYSIS_PORTS_OUT,
    default_config=_analysis_defaults("stpa-sec-default"),
)
async def analysis_stpa_sec(node, inputs, context):
    return await run_analysis(node, inputs, context, "stpa-sec")
