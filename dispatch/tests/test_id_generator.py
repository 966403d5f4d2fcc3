"""
Short ID Tests
==============
"""
import re

import pytest

from conftest import T0, make_prediction
from dispatch.models.domain import Pattern
from dispatch.utils.id_generator import generate_id


class TestGenerateId:

    @pytest.mark.parametrize("record_type,prefix", [
        ("prediction", "pr"),
        ("pattern", "pt"),
    ])
    def test_prefix_and_shape(self, record_type, prefix):
        assert re.fullmatch(rf"{prefix}_[0-9a-z]{{8}}", generate_id(record_type))

    @pytest.mark.parametrize("record_type", ["audio", "insight", "incident"])
    def test_unknown_type_rejected(self, record_type):
        with pytest.raises(ValueError):
            generate_id(record_type)

    def test_records_get_prefixed_ids(self):
        assert make_prediction().id.startswith("pr_")
        assert Pattern.create("Fulton robberies", [], {1, 2}, "LOW", T0).id.startswith("pt_")
        assert make_prediction().id != make_prediction().id
