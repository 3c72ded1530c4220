"""Tests for recovering commands from noisy model output."""

import pytest

from scenepipe.schemas.command import (
    CompleteCommand,
    GenerateImageCommand,
    GenerateVideoCommand,
    UnknownCommand,
    command_to_json,
    parse_command,
)
from scenepipe.services.command_extractor import (
    ExtractionError,
    extract_command,
    extract_json_object,
    match_brace,
    strip_code_fence,
)


def test_plain_object():
    command = extract_command('{"action": "generate_image", "params": {"prompt": "a fox"}}')
    assert command == GenerateImageCommand(prompt="a fox")


def test_reasoning_before_answer_picks_last_object():
    text = (
        'First I considered {"action": "generate_image", "params": {"prompt": "draft"}} '
        "but the user wants the final version, so:\n"
        '{"action": "generate_image", "params": {"prompt": "final"}}'
    )
    assert extract_command(text).prompt == "final"


def test_fenced_answer():
    text = 'Here you go:\n```json\n{"action": "complete", "params": {"message": "Done!"}}\n```'
    assert extract_command(text) == CompleteCommand(message="Done!")


def test_braces_inside_strings_do_not_confuse_matching():
    text = '{"action": "generate_image", "params": {"prompt": "a sign reading {open}"}}'
    assert extract_command(text).prompt == "a sign reading {open}"


def test_objects_without_action_are_skipped():
    text = '{"note": "thinking"} then {"action": "complete", "params": {"message": "ok"}}'
    assert isinstance(extract_command(text), CompleteCommand)


def test_truncated_outer_object_falls_back_to_inner_span():
    text = 'noise {"wrapper": {"action": "generate_video", "params": {"image_url": "https://img.test/1.png"}}'
    command = extract_command(text)
    assert isinstance(command, GenerateVideoCommand)
    assert command.image_url == "https://img.test/1.png"


def test_message_only_means_complete():
    assert extract_command('{"message": "All done"}') == CompleteCommand(message="All done")


def test_parameters_beside_action_are_accepted():
    command = parse_command({"action": "generate_image", "prompt": "a fox"})
    assert command == GenerateImageCommand(prompt="a fox")


def test_unknown_action_is_reported_not_raised():
    command = extract_command('{"action": "dance", "params": {"style": "tango"}}')
    assert isinstance(command, UnknownCommand)
    assert command.action == "dance"
    assert "unknown action" in command.reason


def test_invalid_parameters_become_unknown():
    command = parse_command({"action": "generate_video", "params": {"seconds": -3}})
    assert isinstance(command, UnknownCommand)
    assert "invalid parameters" in command.reason


@pytest.mark.parametrize("text", ["", "   ", "no json here", "{not json}", '{"action": '])
def test_unusable_output_raises(text):
    with pytest.raises(ExtractionError) as exc_info:
        extract_command(text)
    assert exc_info.value.raw_text == text


def test_required_keys_select_screenplay_object():
    text = 'Scene count {"scenes": 3} is a draft. {"task_id": "t1", "scenes": [{"scene_id": 1}]}'
    assert extract_json_object(text, ("task_id", "scenes"))["task_id"] == "t1"


def test_strip_code_fence():
    assert strip_code_fence('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fence('{"a": 1}') == '{"a": 1}'


def test_match_brace():
    text = '{"a": {"b": "}"}}'
    assert match_brace(text, 0) == len(text) - 1
    assert match_brace("{", 0) == -1


def test_command_to_json_is_canonical():
    command = GenerateVideoCommand(image_url="https://img.test/1.png", prompt="pan")
    assert command_to_json(command) == (
        '{"action": "generate_video", "params": {"image_url": "https://img.test/1.png", "prompt": "pan"}}'
    )
