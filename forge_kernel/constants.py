"""
Forge Kernel — Default Policy Constants

Runtime policy is injected via the Initialize event and stored in
ForgeState.policy (ForgePolicy). These are the defaults.
"""

# --- Template names ---
# Printable ASCII only, bounded length.
MAX_TEMPLATE_NAME_LENGTH: int = 64

# --- Principals ---
MAX_PRINCIPAL_LENGTH: int = 150

# --- Generation ---
# Generation is public unless the instance opts in at initialize time.
REQUIRE_ADMIN_FOR_GENERATION: bool = False

# First id handed out by generate-contract. Ids are never reused.
FIRST_GENERATION_EVENT_ID: int = 1
