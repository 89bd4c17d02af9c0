"""Output node: terminal pass-through for displaying findings."""
from threatstudio.node_api import node, Port


@node(
    kind="output-results",
    label="Results View",
    category="OUTPUT",
    description="Display analysis findings",
    ports_in=[Port("findings_data", "findings_data")],
    default_config={"display_mode": "detailed", "auto_open_validation": True},
)
def output_results(node, inputs, context):
    if not inputs:
        return None
    if len(inputs) == 1:
        return inputs[0].value
    return [i.value for i in inputs]
