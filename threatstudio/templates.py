"""Prompt templates and prompt assembly for analysis nodes."""
import re
import time
import uuid
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel

AnalysisType = Literal["stride", "stpa-sec", "custom"]


class PromptTemplate(BaseModel):
    id: str
    name: str
    description: str = ""
    template: str
    variables: List[str] = []
    analysis_type: AnalysisType = "custom"
    expected_output_format: Literal["structured", "freeform"] = "structured"
    version: str = "1.0"
    is_active: bool = True


DEFAULT_TEMPLATES: List[PromptTemplate] = [
    PromptTemplate(
        id="stride-default",
        name="STRIDE Analysis",
        description="Analyze security threats using the STRIDE methodology",
        template="""Analyze the following system architecture for security vulnerabilities using the STRIDE methodology:

- Spoofing: Can an attacker pretend to be someone/something else?
- Tampering: Can an attacker modify data or code?
- Repudiation: Can an attacker deny their actions?
- Information Disclosure: Can an attacker access unauthorized information?
- Denial of Service: Can an attacker prevent legitimate use?
- Elevation of Privilege: Can an attacker gain unauthorized permissions?

System Description:
{{system_description}}

Architecture Components:
{{architecture_components}}

Please provide:
1. Specific vulnerabilities for each STRIDE category
2. Risk severity (High/Medium/Low)
3. Concrete attack scenarios
4. Recommended mitigations
5. CWE IDs where applicable""",
        variables=["system_description", "architecture_components"],
        analysis_type="stride",
    ),
    PromptTemplate(
        id="stpa-sec-default",
        name="STPA-SEC Analysis",
        description="System-Theoretic Process Analysis for Security",
        template="""Perform a STPA-SEC (System-Theoretic Process Analysis for Security) on the following system:

System Description:
{{system_description}}

Control Structure:
{{control_structure}}

Please identify:
1. Unsafe control actions that could lead to security losses
2. Scenarios where safe control actions are not followed
3. Missing or inadequate feedback
4. Component failures or compromises
5. Unsafe interactions between components

For each identified issue:
- Describe the security loss scenario
- Assess the impact severity
- Provide specific constraints to prevent the loss
- Suggest implementation mechanisms""",
        variables=["system_description", "control_structure"],
        analysis_type="stpa-sec",
    ),
    PromptTemplate(
        id="owasp-top10-default",
        name="OWASP Top 10 Analysis",
        description="Analyze for OWASP Top 10 vulnerabilities",
        template="""Analyze the following application for OWASP Top 10 vulnerabilities:

Application Type: {{application_type}}
Technology Stack: {{tech_stack}}
Authentication Method: {{auth_method}}

Please check for:
1. Broken Access Control
2. Cryptographic Failures
3. Injection
4. Insecure Design
5. Security Misconfiguration
6. Vulnerable and Outdated Components
7. Identification and Authentication Failures
8. Software and Data Integrity Failures
9. Security Logging and Monitoring Failures
10. Server-Side Request Forgery

For each finding provide:
- Specific vulnerability description
- Attack scenario
- Impact assessment
- Remediation steps
- Testing approach""",
        variables=["application_type", "tech_stack", "auth_method"],
        analysis_type="custom",
    ),
]

STRUCTURED_OUTPUT_INSTRUCTIONS = """

Please provide your findings in the following structured format:

For each security finding:
1. **Title**: A clear, concise title for the vulnerability
2. **Severity**: High, Medium, or Low
3. **Category**: The relevant category (e.g., for STRIDE: Spoofing, Tampering, etc.)
4. **Description**: Detailed explanation of the vulnerability
5. **Attack Scenario**: How an attacker could exploit this
6. **Mitigations**: Specific steps to address the vulnerability
7. **CWE ID**: If applicable
8. **Confidence**: Your confidence level (0-100%)

Format each finding clearly with these sections labeled."""

IMAGE_CONTEXT = """

Additionally, please analyze the provided architecture diagram image and incorporate any security concerns visible in the diagram into your analysis. Pay special attention to:
- Data flows between components
- Trust boundaries
- External interfaces
- Authentication/authorization points
- Potential attack surfaces"""


class TemplateStore:
    """In-memory template catalogue seeded with the built-in templates."""

    def __init__(self, templates: Optional[List[PromptTemplate]] = None):
        seed = DEFAULT_TEMPLATES if templates is None else templates
        self._templates: Dict[str, PromptTemplate] = {t.id: t for t in seed}

    def get_template(self, template_id: str) -> Optional[PromptTemplate]:
        return self._templates.get(template_id)

    def list_templates(self, active_only: bool = False) -> List[PromptTemplate]:
        templates = list(self._templates.values())
        if active_only:
            templates = [t for t in templates if t.is_active]
        return templates

    def save_template(self, template: PromptTemplate) -> PromptTemplate:
        self._templates[template.id] = template
        return template

    def create_template(
        self,
        name: str,
        template: str,
        variables: List[str],
        description: str = "",
        analysis_type: AnalysisType = "custom",
    ) -> PromptTemplate:
        new = PromptTemplate(
            id=f"template_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}",
            name=name,
            description=description,
            template=template,
            variables=variables,
            analysis_type=analysis_type,
        )
        return self.save_template(new)

    def delete_template(self, template_id: str) -> bool:
        """Delete a user template. Built-in ("-default") templates are kept."""
        if template_id.endswith("-default") or template_id not in self._templates:
            return False
        del self._templates[template_id]
        return True


def process_template(template: PromptTemplate, variables: Dict[str, str]) -> str:
    """Substitute {{ name }} placeholders. Missing values render as [name]."""
    resolved = template.template
    for name in template.variables:
        value = variables.get(name) or f"[{name}]"
        pattern = re.compile(r"{{\s*" + re.escape(name) + r"\s*}}")
        resolved = pattern.sub(lambda _m: value, resolved)
    if template.expected_output_format == "structured":
        resolved += STRUCTURED_OUTPUT_INSTRUCTIONS
    return resolved


def add_image_context(prompt: str, has_image: bool) -> str:
    if not has_image:
        return prompt
    return prompt + IMAGE_CONTEXT


def build_system_prompt(analysis_type: str) -> str:
    if analysis_type == "stride":
        focus = "STRIDE threat modeling"
    elif analysis_type == "stpa-sec":
        focus = "STPA-SEC system analysis"
    else:
        focus = "comprehensive security assessment"
    return f"""You are an expert security analyst specializing in {focus}.

Your analysis should be:
- Specific and actionable
- Based on industry best practices
- Technically accurate
- Risk-focused

Always provide concrete examples and specific technical details.
Reference relevant CWE IDs where applicable.
Consider both technical and business impact."""
