"""
Tests for Treatment Classifier

Rule order, fallback, case-insensitivity and taxonomy completeness.
"""

import pytest

from services.treatment_classifier import (
    CATEGORY_LABELS,
    FALLBACK,
    SPECIALTIES,
    TAXONOMY,
    TREATMENT_RULES,
    classify,
    get_category_label,
    iter_taxonomy,
    make_category_id,
)


# =============================================================================
# Classification
# =============================================================================

class TestClassify:
    """Tests for classify()."""

    @pytest.mark.parametrize("category,name,expected", [
        ('美容外科', '二重埋没法', ('surgery', 'double_eyelid', 'surgery_double_eyelid')),
        ('', 'ヒアルロン酸注入', ('dermatology', 'injection', 'dermatology_injection')),
        (None, '医療脱毛 全身', ('hair_removal', 'hair_removal', 'hair_removal')),
        ('Skin', 'Laser Toning', ('dermatology', 'skin', 'dermatology_skin')),
        ('物販', 'ビタミンC', ('other', 'products', 'other_products')),
        ('', '耳ピアス', ('other', 'piercing', 'other_piercing')),
        ('', '笑気麻酔', ('other', 'anesthesia_needle_pack', 'other_anesthesia_needle_pack')),
        ('外科', '眼瞼下垂手術', ('surgery', 'other', 'surgery_other')),
    ])
    def test_known_items(self, category, name, expected):
        assert tuple(classify(category, name)) == expected

    def test_first_matching_rule_wins(self):
        """An item matching two rules takes the earlier one."""
        result = classify('', '二重 + 糸リフト')
        assert result.subcategory == 'double_eyelid'

    def test_surgery_other_is_checked_last(self):
        """'外科' in the category does not hide a more specific name match."""
        result = classify('美容外科', '鼻尖形成')
        assert result.category_id == 'surgery_nose_philtrum'

    def test_case_insensitive(self):
        assert classify('', 'DOUBLE EYELID').subcategory == 'double_eyelid'
        assert classify('', 'Hair Removal').specialty == 'hair_removal'

    def test_category_alone_can_match(self):
        assert classify('スキンケア', 'コース A').category_id == 'dermatology_skin'

    def test_english_words_in_category_ignored(self):
        """Only Japanese terms are looked up in the category."""
        assert classify('Package plan', 'consultation') == FALLBACK
        assert classify('Body', 'カウンセリング') == FALLBACK
        assert classify('Face lift', '') == FALLBACK

    def test_japanese_category_terms_still_match(self):
        assert classify('パック', 'consultation').category_id == 'other_anesthesia_needle_pack'
        assert classify('手術', 'consultation').category_id == 'surgery_other'

    def test_unmatched_falls_back_to_products(self):
        assert classify('', 'unknown thing') == FALLBACK
        assert FALLBACK.category_id == 'other_products'

    def test_empty_inputs_fall_back(self):
        assert classify(None, None) == FALLBACK
        assert classify('', '') == FALLBACK


# =============================================================================
# Taxonomy
# =============================================================================

class TestTaxonomy:
    """Tests for taxonomy helpers."""

    def test_hair_removal_id_not_doubled(self):
        assert make_category_id('hair_removal', 'hair_removal') == 'hair_removal'
        assert make_category_id('surgery', 'other') == 'surgery_other'

    def test_iter_taxonomy_covers_every_node(self):
        nodes = list(iter_taxonomy())
        assert len(nodes) == sum(len(TAXONOMY[s]) for s in SPECIALTIES) == 14
        assert len({category_id for _, _, category_id in nodes}) == 14

    def test_every_rule_targets_a_taxonomy_node(self):
        for rule in TREATMENT_RULES:
            assert rule.subcategory in TAXONOMY[rule.specialty]

    def test_every_node_has_a_label(self):
        for _, _, category_id in iter_taxonomy():
            assert category_id in CATEGORY_LABELS

    def test_label_lookup(self):
        assert get_category_label('hair_removal') == '脱毛'
        assert get_category_label('surgery_double_eyelid') == '二重'
        assert get_category_label('nope') == 'nope'
