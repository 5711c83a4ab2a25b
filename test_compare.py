"""构件版本对比。"""

import json

import pytest

from lorekeeper.artifacts.compare import compare_artifact_content

CHARACTERS = {
    "entities": [
        {"key": "lin", "name": "林青", "type": "character", "aliases": ["青儿", "小林"]},
        {"key": "su", "name": "苏婉", "type": "character"},
    ],
    "relations": [{"source_key": "lin", "target_key": "su", "relation_type": "friend", "strength": 0.5}],
}

OUTLINE = {
    "volumes": [
        {
            "key": "v1",
            "title": "卷一",
            "chapters": [
                {"key": "c1", "title": "入门", "outline": "拜师"},
                {"key": "c2", "title": "试炼", "outline": "闯关"},
            ],
        },
        {"key": "v2", "title": "卷二", "chapters": []},
    ]
}


@pytest.mark.parametrize(
    "artifact_type,doc",
    [
        ("novel_foundation", {"title": "青云志", "description": "少年修仙"}),
        ("worldview", {"genre": "仙侠", "world_settings": {"locations": ["青云山"]}}),
        ("characters", CHARACTERS),
        ("outline", OUTLINE),
    ],
)
def test_compare_same_version_is_unchanged(artifact_type, doc):
    diff = compare_artifact_content(artifact_type, json.dumps(doc, ensure_ascii=False), doc)
    assert diff.changed_fields == []
    assert not diff.changed


def test_worldview_location_reorder_is_not_a_change():
    before = {"genre": "仙侠", "world_settings": {"locations": ["青云山", "落霞镇"]}}
    after = {"genre": " 仙侠 ", "world_settings": {"locations": ["落霞镇", "青云山", "落霞镇 "]}}
    assert compare_artifact_content("worldview", before, after).changed_fields == []


def test_worldview_fields_and_locations():
    before = {"genre": "仙侠", "pov": "第三人称", "world_settings": {"locations": ["青云山", "落霞镇"]}}
    after = {"genre": "玄幻", "pov": "第三人称", "world_settings": {"locations": ["青云山", "天音寺"]}}

    diff = compare_artifact_content("worldview", before, after)

    assert diff.changed_fields == ["genre", "world_settings"]
    assert diff.worldview.genre_changed
    assert not diff.worldview.pov_changed
    assert diff.worldview.locations_added == ["天音寺"]
    assert diff.worldview.locations_removed == ["落霞镇"]


def test_characters_classified_by_key():
    after = json.loads(json.dumps(CHARACTERS))
    after["entities"][0]["aliases"] = ["小林", "青儿"]
    after["entities"][1]["description"] = "温婉"
    after["entities"].append({"key": "zhang", "name": "张小凡", "type": "character"})
    after["relations"][0]["strength"] = 0.9
    after["relations"].append({"source_key": "zhang", "target_key": "lin", "relation_type": "rival"})

    diff = compare_artifact_content("characters", CHARACTERS, after)

    assert diff.changed_fields == ["entities", "relations"]
    assert diff.characters.entities_added == ["zhang"]
    assert diff.characters.entities_updated == ["su"]
    assert diff.characters.relations_added == ["zhang->lin:rival"]
    assert diff.characters.relations_updated == ["lin->su:friend"]


def test_outline_moved_chapter():
    """未改内容、只换了卷的章节标记为移动，而非更新。"""
    after = json.loads(json.dumps(OUTLINE))
    moved = after["volumes"][0]["chapters"].pop(1)
    after["volumes"][1]["chapters"].append(moved)
    after["volumes"][0]["chapters"][0]["outline"] = "拜师学艺"
    after["volumes"][1]["summary"] = "下山"

    diff = compare_artifact_content("outline", OUTLINE, after)

    assert diff.changed_fields == ["volumes"]
    assert diff.outline.volumes_updated == ["v2"]
    assert diff.outline.chapters_updated == ["c1"]
    assert [(m.key, m.from_volume_key, m.to_volume_key) for m in diff.outline.chapters_moved] == [
        ("c2", "v1", "v2")
    ]


def test_empty_side_reports_content():
    diff = compare_artifact_content("outline", "", OUTLINE)
    assert diff.changed_fields == ["content"]
    assert compare_artifact_content("outline", OUTLINE, "  ").changed_fields == ["content"]


def test_unparsable_side_falls_back_to_raw():
    assert compare_artifact_content("worldview", "{broken", "{broken").changed_fields == []
    assert compare_artifact_content("worldview", "{broken", '{"genre": "x"}').changed_fields == ["content"]


def test_invalid_type_rejected():
    with pytest.raises(ValueError):
        compare_artifact_content("timeline", "{}", "{}")
