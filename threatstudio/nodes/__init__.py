"""Built-in node kinds. Importing this package registers all of them."""
from threatstudio.nodes import input_nodes     # noqa: F401
from threatstudio.nodes import analysis_nodes  # noqa: F401
from threatstudio.nodes import output_nodes    # noqa: F401
