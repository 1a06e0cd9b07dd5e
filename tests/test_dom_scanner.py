from healing_runner.agent.dom_scanner import MatchRank, NodeInfo, normalize, rank_nodes, score_node
from healing_runner.agent.targets import Action, StepAction, TargetDescriptor, parse_step_action

import pytest


def _node(ref, **kwargs):
    return NodeInfo(ref=ref, **kwargs)


def test_exact_text_beats_substring_regardless_of_dom_order():
    nodes = [
        _node(0, tag="a", text="Submit feedback"),
        _node(1, tag="button", text="Resubmit"),
        _node(2, tag="span", class_name="submit-area"),
        _node(3, tag="button", text="SUBMIT"),
    ]

    ranked = rank_nodes(nodes, "submit", Action.CLICK)

    assert ranked[0][3].ref == 3
    assert ranked[0][0] == MatchRank.EXACT
    assert [item[3].ref for item in ranked[1:]] == [0, 1, 2]


def test_whole_word_ranks_between_exact_and_substring():
    nodes = [
        _node(0, tag="button", text="Resubmit order"),
        _node(1, tag="button", text="Submit order"),
    ]

    ranked = rank_nodes(nodes, "submit", Action.CLICK)

    assert [(item[3].ref, item[0]) for item in ranked] == [
        (1, MatchRank.WHOLE_WORD),
        (0, MatchRank.SUBSTRING),
    ]


def test_ties_within_rank_keep_dom_order():
    nodes = [_node(i, tag="button", text="Save") for i in range(4)]

    ranked = rank_nodes(nodes, "save", Action.CLICK)

    assert [item[2] for item in ranked] == [0, 1, 2, 3]
    assert ranked == rank_nodes(nodes, "save", Action.CLICK)


def test_fill_matches_through_wrapping_label():
    node = _node(0, tag="input", label="Email")

    assert score_node(node, "Email", Action.FILL) == (MatchRank.EXACT, "label")


def test_fill_falls_back_to_placeholder_and_name():
    by_placeholder = _node(0, tag="input", placeholder="Customer Name")
    by_name = _node(1, tag="input", name="customer name")

    assert score_node(by_placeholder, "customer name", Action.FILL) == (MatchRank.EXACT, "placeholder")
    assert score_node(by_name, "Customer Name", Action.FILL) == (MatchRank.EXACT, "name")


def test_substring_uses_combined_attributes():
    node = _node(0, tag="div", test_id="checkout-submit-btn")

    assert score_node(node, "submit", Action.CLICK) == (MatchRank.SUBSTRING, "attributes")


def test_unrelated_nodes_are_discarded():
    nodes = [_node(0, tag="button", text="Cancel"), _node(1, tag="a", text="Home")]

    assert rank_nodes(nodes, "Submit", Action.CLICK) == []


def test_hidden_nodes_still_match():
    node = _node(0, tag="button", text="Continue", visible=False)

    assert score_node(node, "continue", Action.CLICK) == (MatchRank.EXACT, "text")


def test_normalize_collapses_whitespace_and_case():
    assert normalize("  Customer \n  NAME ") == "customer name"
    assert normalize(None) == ""


def test_node_info_from_dict_maps_script_keys():
    node = NodeInfo.from_dict({"ref": 4, "tag": "input", "ariaLabel": "Search", "inputType": "submit", "visible": False})

    assert node.ref == 4
    assert node.aria_label == "Search"
    assert node.kind == "button"
    assert node.visible is False


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("open", StepAction.OPEN),
        ("OPEN_URL", StepAction.OPEN),
        ("Navigate", StepAction.OPEN),
        ("type", StepAction.FILL),
        ("assert", StepAction.VERIFY),
        ("Screenshot", StepAction.SCREENSHOT),
        ("hover", None),
        ("", None),
    ],
)
def test_parse_step_action_accepts_aliases(raw, expected):
    assert parse_step_action(raw) == expected


def test_target_descriptor_rejects_blank_target():
    with pytest.raises(ValueError):
        TargetDescriptor(target="   ", action=Action.CLICK)
