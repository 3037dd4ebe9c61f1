"""
Centralized Constants - SINGLE SOURCE OF TRUTH

Clinic (tenant) identifiers, display names and demographic bucket labels.
Import these instead of re-declaring tenant lists in services or routes.

DO NOT duplicate these definitions in other files.
"""

# =============================================================================
# TENANTS (one Medical Force account per clinic)
# =============================================================================

TENANT_YOKOHAMA = 'yokohama'
TENANT_KORIYAMA = 'koriyama'
TENANT_MITO = 'mito'
TENANT_OMIYA = 'omiya'

# Processing order for bootstrap and refresh
TENANT_IDS = [TENANT_YOKOHAMA, TENANT_KORIYAMA, TENANT_MITO, TENANT_OMIYA]

TENANT_DISPLAY_NAMES = {
    TENANT_YOKOHAMA: '横浜院',
    TENANT_KORIYAMA: '郡山院',
    TENANT_MITO: '水戸院',
    TENANT_OMIYA: '大宮院',
}

# Tenant selection meaning "every clinic"
ALL_TENANTS = 'all'


def get_tenant_display_name(tenant_id: str) -> str:
    """
    Get the clinic display name for a tenant id.

    Args:
        tenant_id: Tenant id (e.g., 'yokohama')

    Returns:
        Display name, or the tenant id itself if unknown
    """
    return TENANT_DISPLAY_NAMES.get(tenant_id, tenant_id)


def is_valid_tenant_selection(selection: str) -> bool:
    """Check a clinic filter value ('all' or a known tenant id)."""
    return selection == ALL_TENANTS or selection in TENANT_IDS


# =============================================================================
# DEMOGRAPHIC LABELS
# =============================================================================

UNKNOWN_LABEL = 'unknown'

AGE_GROUP_UNDER_20 = '10s'
AGE_GROUP_70_PLUS = '70+'

GENDER_MALE = 'male'
GENDER_FEMALE = 'female'
GENDER_OTHER = 'other'

# Raw gender values seen in visitor records -> normalized label
GENDER_ALIASES = {
    'male': GENDER_MALE,
    '男性': GENDER_MALE,
    'female': GENDER_FEMALE,
    '女性': GENDER_FEMALE,
}

VISIT_TYPE_FIRST = 'first'
VISIT_TYPE_REPEAT = 'repeat'
