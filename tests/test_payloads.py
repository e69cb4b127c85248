from bulkpick.data import payloads


def test_numeric_fields_tolerate_strings_and_garbage():
    assert payloads.parse_float("1,250.5") == 1250.5
    assert payloads.parse_float("n/a", 2.0) == 2.0
    assert payloads.parse_int(" 7.0 ") == 7
    assert payloads.parse_int("", 3) == 3


def test_parse_int_falls_back_on_values_too_large_for_int():
    assert payloads.parse_int("inf") == 0
    assert payloads.parse_int("1e400", 5) == 5
    assert payloads.parse_int(float("-inf"), -1) == -1


def test_ingredient_with_overflowing_line_id_still_parses():
    ing = payloads.parse_ingredient(
        {"item_key": "INSALT02", "line_id": "1e400", "to_picked_bulk_qty": "4", "picked_bulk_qty": "4"}
    )

    assert ing.item_key == "INSALT02"
    assert ing.line_id == 0
    assert ing.remaining_bags == 0.0
