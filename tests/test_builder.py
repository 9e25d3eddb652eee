"""Tests for the statement builder."""

import pytest

from pgmapper import InvalidIdentifierError, OnConflict, Raw, RawConflict, Select
from pgmapper.builder import Insert, column_list, identifier


class TestIdentifiers:
    @pytest.mark.parametrize("name", ["items", "_t1", "public.items", "col$x"])
    def test_plain_identifiers(self, name):
        assert identifier(name) == name

    @pytest.mark.parametrize(
        "name", ["", "1abc", "items; DROP TABLE x", "a b", "a.b.c", '"quoted"', "x--"]
    )
    def test_rejects(self, name):
        with pytest.raises(InvalidIdentifierError):
            identifier(name)

    def test_raw_passes_through(self):
        assert identifier(Raw('"Mixed Case"')) == '"Mixed Case"'

    def test_invalid_identifier_is_value_error(self):
        with pytest.raises(ValueError):
            identifier("bad name")

    def test_column_list_from_string(self):
        assert column_list("id,name ,  price") == "id, name, price"

    def test_star(self):
        assert column_list(" * ") == "*"

    def test_empty_list(self):
        with pytest.raises(InvalidIdentifierError):
            column_list([])


class TestSelect:
    def test_without_predicate(self):
        stmt = Select("items", "id, name").render()
        assert stmt.sql == "SELECT id, name FROM items;"
        assert stmt.params is None

    def test_with_predicate_and_params(self):
        stmt = Select("items", ["id"], "price > %s", (10,)).render()
        assert stmt.sql == "SELECT id FROM items WHERE price > %s;"
        assert stmt.params == (10,)

    def test_raw_fields(self):
        stmt = Select("items", Raw("count(*) AS n")).render()
        assert stmt.sql == "SELECT count(*) AS n FROM items;"

    def test_rejects_injected_table(self):
        with pytest.raises(InvalidIdentifierError):
            Select("items; DELETE FROM items").render()


class TestInsert:
    def test_placeholders_numbered_from_one(self):
        stmt = Insert("items", ["id", "name", "price"], [(1, "a", 2.5)]).render()
        assert stmt.sql == (
            "INSERT INTO items (id, name, price) VALUES (%(p1)s, %(p2)s, %(p3)s)"
        )
        assert stmt.params == {"p1": 1, "p2": "a", "p3": 2.5}

    def test_placeholder_count_matches_fields(self):
        fields = [f"c{i}" for i in range(12)]
        stmt = Insert("t", fields, [list(range(12))]).render()
        assert list(stmt.params) == [f"p{i}" for i in range(1, 13)]
        assert stmt.sql.count("%(") == 12

    def test_multi_row_numbering_continues(self):
        stmt = Insert("t", "a,b", [(1, 2), (3, 4), (5, 6)]).render()
        assert stmt.sql == (
            "INSERT INTO t (a, b) VALUES (%(p1)s, %(p2)s), (%(p3)s, %(p4)s), (%(p5)s, %(p6)s)"
        )
        assert stmt.params == {"p1": 1, "p2": 2, "p3": 3, "p4": 4, "p5": 5, "p6": 6}

    def test_row_length_mismatch(self):
        with pytest.raises(ValueError, match="Row 1 has 1 values for 2 fields"):
            Insert("t", ["a", "b"], [(1, 2), (3,)]).render()

    def test_requires_rows(self):
        with pytest.raises(ValueError):
            Insert("t", ["a"], []).render()

    def test_rejects_bad_column(self):
        with pytest.raises(InvalidIdentifierError):
            Insert("t", ["a", "b) VALUES (1); --"], [(1, 2)]).render()


class TestOnConflict:
    def test_do_nothing_without_keys(self):
        stmt = Insert("t", ["id", "v"], [(1, "x")], OnConflict()).render()
        assert stmt.sql.endswith(" ON CONFLICT DO NOTHING")

    def test_do_update_lists_every_field(self):
        stmt = Insert("t", ["id", "v", "w"], [(1, "x", "y")], OnConflict(["id"])).render()
        assert stmt.sql == (
            "INSERT INTO t (id, v, w) VALUES (%(p1)s, %(p2)s, %(p3)s)"
            " ON CONFLICT (id) DO UPDATE SET id = %(p1)s, v = %(p2)s, w = %(p3)s"
        )

    def test_composite_keys(self):
        stmt = Insert("t", ["a", "b"], [(1, 2)], OnConflict(("a", "b"))).render()
        assert " ON CONFLICT (a, b) DO UPDATE SET " in stmt.sql

    def test_raw_conflict_clause(self):
        stmt = Insert("t", ["id"], [(1,), (2,)], RawConflict("(id) DO NOTHING")).render()
        assert stmt.sql.endswith("VALUES (%(p1)s), (%(p2)s) ON CONFLICT (id) DO NOTHING")


class TestPercentInTrustedText:
    def test_raw_conflict_percent_is_escaped(self):
        stmt = Insert(
            "t", ["id", "note"], [(1, "x")], RawConflict("(id) DO UPDATE SET note = '100%'")
        ).render()
        assert stmt.sql.endswith(" ON CONFLICT (id) DO UPDATE SET note = '100%%'")
        assert stmt.params == {"p1": 1, "p2": "x"}

    def test_raw_names_are_escaped(self):
        stmt = Insert(Raw('"rate%"'), [Raw('"pct%"')], [(5,)], OnConflict([Raw('"pct%"')])).render()
        assert stmt.sql == (
            'INSERT INTO "rate%%" ("pct%%") VALUES (%(p1)s)'
            ' ON CONFLICT ("pct%%") DO UPDATE SET "pct%%" = %(p1)s'
        )

    def test_select_is_left_verbatim(self):
        stmt = Select("t", "id", "note LIKE '10%'").render()
        assert stmt.sql == "SELECT id FROM t WHERE note LIKE '10%';"
