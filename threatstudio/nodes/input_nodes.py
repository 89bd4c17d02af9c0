"""Input nodes: architecture diagram upload and free-text system description."""
import base64

from threatstudio.models import NodeExecutionError
from threatstudio.node_api import node, Port, logger


@node(
    kind="input-diagram",
    label="Architecture Diagram",
    category="INPUT",
    description="Upload architecture diagram",
    ports_out=[Port("diagram_data", "diagram_data")],
    default_config={
        "file_name": None,
        "file_data": None,     # raw bytes from an upload
        "file_base64": None,   # or an already-encoded payload (JSON clients)
        "media_type": None,
        "upload_status": "empty",
    },
)
async def input_diagram(node, inputs, context):
    config = node.config
    if config.get("file_base64"):
        encoded = config["file_base64"]
    elif config.get("file_data"):
        encoded = base64.b64encode(config["file_data"]).decode("ascii")
    else:
        raise NodeExecutionError(
            "No file uploaded: architecture diagram is required. "
            "Please upload a diagram file in the node configuration."
        )

    logger.info(f"Encoded {config.get('file_name') or 'diagram'} ({len(encoded)} base64 chars)")
    return {
        "type": "diagram",
        "file_name": config.get("file_name"),
        "media_type": config.get("media_type") or "image/jpeg",
        "base64": encoded,
    }


@node(
    kind="input-text",
    label="Text Input",
    category="INPUT",
    description="System description text",
    ports_out=[Port("text_data", "text_data")],
    default_config={"system_name": "", "description": "", "context": ""},
)
async def input_text(node, inputs, context):
    config = node.config
    system_name = (config.get("system_name") or "").strip()
    if not system_name:
        raise NodeExecutionError("System name is required")

    return {
        "type": "text",
        "data": {
            "system_name": system_name,
            "description": config.get("description") or "",
            "context": config.get("context") or "",
        },
    }
