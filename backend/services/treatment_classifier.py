"""
Treatment Classifier - Maps payment line items onto the clinic treatment taxonomy.

Rules are evaluated top to bottom against the lower-cased line item name and
category. The first rule with a matching keyword wins. Anything unmatched
falls back to other/products, so classify() never fails.

Taxonomy:
- surgery: double_eyelid, dark_circles, thread_lift, face_slimming,
           nose_philtrum, body_liposuction, breast_augmentation, other
- dermatology: injection, skin
- hair_removal: hair_removal
- other: piercing, products, anesthesia_needle_pack

Usage:
    from services.treatment_classifier import classify

    result = classify('美容外科', '二重埋没法')
    result.specialty     # 'surgery'
    result.subcategory   # 'double_eyelid'
    result.category_id   # 'surgery_double_eyelid'
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, NamedTuple, Optional, Tuple

logger = logging.getLogger(__name__)


# =============================================================================
# TAXONOMY
# =============================================================================

SPECIALTY_SURGERY = 'surgery'
SPECIALTY_DERMATOLOGY = 'dermatology'
SPECIALTY_HAIR_REMOVAL = 'hair_removal'
SPECIALTY_OTHER = 'other'

SPECIALTIES = [
    SPECIALTY_SURGERY,
    SPECIALTY_DERMATOLOGY,
    SPECIALTY_HAIR_REMOVAL,
    SPECIALTY_OTHER,
]

# specialty -> ordered subcategories
TAXONOMY: Dict[str, List[str]] = {
    SPECIALTY_SURGERY: [
        'double_eyelid',
        'dark_circles',
        'thread_lift',
        'face_slimming',
        'nose_philtrum',
        'body_liposuction',
        'breast_augmentation',
        'other',
    ],
    SPECIALTY_DERMATOLOGY: ['injection', 'skin'],
    SPECIALTY_HAIR_REMOVAL: ['hair_removal'],
    SPECIALTY_OTHER: ['piercing', 'products', 'anesthesia_needle_pack'],
}

SPECIALTY_LABELS = {
    SPECIALTY_SURGERY: '外科',
    SPECIALTY_DERMATOLOGY: '皮膚科',
    SPECIALTY_HAIR_REMOVAL: '脱毛',
    SPECIALTY_OTHER: 'その他',
}

CATEGORY_LABELS = {
    'surgery_double_eyelid': '二重',
    'surgery_dark_circles': 'くま治療',
    'surgery_thread_lift': '糸リフト',
    'surgery_face_slimming': '小顔（S,BF)',
    'surgery_nose_philtrum': '鼻・人中手術',
    'surgery_body_liposuction': 'ボディー脂肪吸引',
    'surgery_breast_augmentation': '豊胸',
    'surgery_other': 'その他外科',
    'dermatology_injection': '注入',
    'dermatology_skin': 'スキン',
    'hair_removal': '脱毛',
    'other_piercing': 'ピアス',
    'other_products': '物販',
    'other_anesthesia_needle_pack': '麻酔・針・パック',
}


def make_category_id(specialty: str, subcategory: str) -> str:
    """
    Build the flat category id for a (specialty, subcategory) pair.

    hair_removal has a single subcategory of the same name, so its id is
    just 'hair_removal' rather than 'hair_removal_hair_removal'.
    """
    if specialty == subcategory:
        return specialty
    return f'{specialty}_{subcategory}'


# =============================================================================
# RULES
# =============================================================================

class Classification(NamedTuple):
    specialty: str
    subcategory: str
    category_id: str


@dataclass(frozen=True)
class TreatmentRule:
    """
    One classification rule.

    `keywords` are matched against the item name, `category_keywords`
    against the item category. Category keywords are Japanese terms only.
    """
    keywords: Tuple[str, ...]
    category_keywords: Tuple[str, ...]
    specialty: str
    subcategory: str

    def matches(self, name: str, category: str) -> bool:
        return (
            any(k in name for k in self.keywords)
            or any(k in category for k in self.category_keywords)
        )


# Order matters: the first matching rule wins.
TREATMENT_RULES: List[TreatmentRule] = [
    TreatmentRule(('二重', 'double', 'eyelid'), ('二重',), SPECIALTY_SURGERY, 'double_eyelid'),
    TreatmentRule(('くま', 'dark', 'circle'), ('くま',), SPECIALTY_SURGERY, 'dark_circles'),
    TreatmentRule(('糸', 'thread', 'lift'), ('糸',), SPECIALTY_SURGERY, 'thread_lift'),
    TreatmentRule(('小顔', 'face', 'slimming'), ('小顔',), SPECIALTY_SURGERY, 'face_slimming'),
    TreatmentRule(
        ('鼻', '人中', 'nose', 'philtrum'), ('鼻', '人中'),
        SPECIALTY_SURGERY, 'nose_philtrum',
    ),
    TreatmentRule(('脂肪吸引', 'liposuction', 'body'), ('脂肪吸引',), SPECIALTY_SURGERY, 'body_liposuction'),
    TreatmentRule(('豊胸', 'breast', 'augmentation'), ('豊胸',), SPECIALTY_SURGERY, 'breast_augmentation'),
    TreatmentRule(
        ('注入', 'injection', 'ボトックス', 'ヒアルロン'), ('注入',),
        SPECIALTY_DERMATOLOGY, 'injection',
    ),
    TreatmentRule(('スキン', 'skin', 'レーザー', 'laser'), ('スキン',), SPECIALTY_DERMATOLOGY, 'skin'),
    TreatmentRule(('脱毛', 'hair', 'removal'), ('脱毛',), SPECIALTY_HAIR_REMOVAL, 'hair_removal'),
    TreatmentRule(('ピアス', 'piercing'), ('ピアス',), SPECIALTY_OTHER, 'piercing'),
    TreatmentRule(('物販', 'product', '商品'), ('物販',), SPECIALTY_OTHER, 'products'),
    TreatmentRule(
        ('麻酔', '針', 'パック', 'anesthesia', 'needle', 'pack'), ('麻酔', '針', 'パック'),
        SPECIALTY_OTHER, 'anesthesia_needle_pack',
    ),
    TreatmentRule(('手術', 'surgery', '外科'), ('手術', '外科'), SPECIALTY_SURGERY, 'other'),
]

FALLBACK = Classification(
    SPECIALTY_OTHER, 'products', make_category_id(SPECIALTY_OTHER, 'products')
)


# =============================================================================
# CLASSIFICATION
# =============================================================================

def classify(category: Optional[str], name: Optional[str]) -> Classification:
    """
    Classify a payment line item into (specialty, subcategory, category_id).

    Args:
        category: Line item category (may be None or empty)
        name: Line item name (may be None or empty)

    Returns:
        Classification. Unmatched input falls back to other/products.
    """
    name_lower = (name or '').lower()
    category_lower = (category or '').lower()

    for rule in TREATMENT_RULES:
        if rule.matches(name_lower, category_lower):
            return Classification(
                rule.specialty,
                rule.subcategory,
                make_category_id(rule.specialty, rule.subcategory),
            )

    logger.debug(
        f"No treatment rule matched (category={category!r}, name={name!r}), "
        f"using {FALLBACK.category_id}"
    )
    return FALLBACK


def get_category_label(category_id: str) -> str:
    """Get the display label for a category id."""
    return CATEGORY_LABELS.get(category_id, category_id)


def iter_taxonomy():
    """Yield (specialty, subcategory, category_id) in taxonomy order."""
    for specialty in SPECIALTIES:
        for subcategory in TAXONOMY[specialty]:
            yield specialty, subcategory, make_category_id(specialty, subcategory)
