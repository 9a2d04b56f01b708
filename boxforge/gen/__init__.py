from boxforge.gen.generator import enforce_output_invariants, generate_config, generate_config_file
from boxforge.gen.mixin import apply_mixin, deep_assign

__all__ = [
    "apply_mixin",
    "deep_assign",
    "enforce_output_invariants",
    "generate_config",
    "generate_config_file",
]
