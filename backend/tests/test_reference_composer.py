"""Tests for image and video reference composition."""

import pytest

from scenepipe.pipeline.references import (
    MAX_VIDEO_REFERENCES,
    ImageMode,
    compose_image_request,
    compose_video_references,
)


def test_first_unit_uses_user_images():
    plan = compose_image_request(0, ["sheet-a"], ["user-1"])
    assert plan.mode == ImageMode.USER_REFERENCE
    assert plan.references == ["user-1"]


def test_later_units_use_identity_references():
    plan = compose_image_request(1, ["sheet-a", "sheet-b", "sheet-c"], ["user-1"])
    assert plan.mode == ImageMode.IDENTITY_REFERENCE
    assert plan.references == ["sheet-a", "sheet-b"]
    assert plan.guarantees_consistency


def test_no_references_is_text_only():
    plan = compose_image_request(2, [])
    assert plan.mode == ImageMode.TEXT_ONLY
    assert plan.references == []
    assert not plan.guarantees_consistency


@pytest.mark.parametrize("identity", [[], ["a"], ["a", "b"], ["a", "b", "c", "d"]])
def test_video_references_put_scene_image_last(identity):
    refs = compose_video_references(identity, "scene.png")
    assert len(refs) <= MAX_VIDEO_REFERENCES
    assert refs[-1] == "scene.png"
    assert refs[:-1] == identity[:2]


def test_video_references_require_scene_image():
    with pytest.raises(ValueError):
        compose_video_references(["a"], "")
