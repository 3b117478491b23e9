import pytest

from flowcanvas.models import GridComposerData, GridSlot, MotionPromptData
from flowcanvas.operations import (
    combine_motion_prompt,
    compose_grid,
    decode_data_url,
    encode_data_url,
    generate_slot_prompts,
    load_image,
    parse_grid_layout,
    split_grid_image,
)


def _slots(*labels):
    return [GridSlot(id=f"S{i + 1}", label=label) for i, label in enumerate(labels)]


class TestPrompts:
    def test_motion_prompt_skips_blank_parts(self):
        data = MotionPromptData(base_prompt="a dancer", camera_movement=" slow pan ", lighting="")
        assert combine_motion_prompt(data) == "a dancer, slow pan"

    def test_slot_prompts_drop_dangling_commas(self):
        prompts = generate_slot_prompts("{prompt}, {label} view, {metadata}", "knight", _slots("Front", "Back"))
        assert prompts == {"S1": "knight, Front view", "S2": "knight, Back view"}

    def test_slot_prompts_without_base_prompt(self):
        prompts = generate_slot_prompts("{prompt}, {label} view, {metadata}", "", _slots("Side"))
        assert prompts == {"S1": "Side view"}

    def test_slot_placeholder_and_metadata(self):
        slots = [GridSlot(id="P1", label="Opening", metadata="wide shot")]
        prompts = generate_slot_prompts("{slot}: {prompt} - {label} ({metadata})", "heist", slots)
        assert prompts == {"P1": "P1: heist - Opening (wide shot)"}


class TestGridLayout:
    @pytest.mark.parametrize("layout, expected", [("2x3", (2, 3)), ("3X3", (3, 3)), (" 1 x 4 ", (1, 4)), ("2×2", (2, 2))])
    def test_parse(self, layout, expected):
        assert parse_grid_layout(layout) == expected

    @pytest.mark.parametrize("layout", ["", "abc", "0x2", "2x", None])
    def test_parse_rejects(self, layout):
        with pytest.raises(ValueError):
            parse_grid_layout(layout)


class TestImages:
    def test_data_url_helpers(self):
        url = encode_data_url(b"abc", "image/jpeg")
        assert url == "data:image/jpeg;base64,YWJj"
        assert decode_data_url(url) == b"abc"

    def test_load_image_rejects_garbage(self):
        with pytest.raises(ValueError):
            load_image(encode_data_url(b"not an image"))

    def test_split_row_major(self, tiny_grid_png):
        cells = split_grid_image(tiny_grid_png, 1, 2, ["S1", "S2"])
        assert list(cells) == ["S1", "S2"]
        assert all(url.startswith("data:image/jpeg;base64,") for url in cells.values())

        left = load_image(cells["S1"]).convert("RGB")
        right = load_image(cells["S2"]).convert("RGB")
        assert left.size == right.size == (8, 8)
        r, _, b = left.getpixel((4, 4))
        assert r > 200 and b < 60
        r, _, b = right.getpixel((4, 4))
        assert b > 200 and r < 60

    def test_split_ignores_extra_slots(self, tiny_grid_png):
        assert list(split_grid_image(tiny_grid_png, 1, 2, ["a", "b", "c"])) == ["a", "b"]

    def test_split_rejects_tiny_image(self, make_png):
        with pytest.raises(ValueError):
            split_grid_image(make_png((1, 1)), 2, 2, ["a", "b", "c", "d"])

    def test_compose_places_cells(self, make_png):
        options = GridComposerData(cell_padding=0, show_borders=False, show_labels=False)
        images = {"S1": make_png(colour="red"), "S2": make_png(colour="blue")}
        sheet = load_image(compose_grid(1, 2, _slots("A", "B"), images, options)).convert("RGB")
        assert sheet.size == (16, 8)
        assert sheet.getpixel((2, 2)) == (255, 0, 0)
        assert sheet.getpixel((12, 2)) == (0, 0, 255)

    def test_compose_padding_and_blank_slots(self, make_png):
        options = GridComposerData(cell_padding=10, show_borders=False, show_labels=False, background_color="#00ff00")
        sheet = load_image(
            compose_grid(1, 2, _slots("A", "B"), {"S1": make_png()}, options)
        ).convert("RGB")
        assert sheet.size == (2 * 8 + 3 * 10, 8 + 2 * 10)
        assert sheet.getpixel((0, 0)) == (0, 255, 0)
        assert sheet.getpixel((14, 14)) == (255, 0, 0)
        assert sheet.getpixel((32, 14)) == (0, 255, 0)

    def test_compose_with_labels_and_borders(self, make_png):
        options = GridComposerData(cell_padding=4, label_size=12)
        url = compose_grid(2, 2, _slots("A", "B", "C", "D"), {"S4": make_png((32, 32))}, options, (32, 32))
        sheet = load_image(url)
        assert url.startswith("data:image/png;base64,")
        assert sheet.size == (2 * 32 + 3 * 4, 2 * 32 + 3 * 4)
