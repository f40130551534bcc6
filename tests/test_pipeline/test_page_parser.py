"""
Tests for page payload parsing and note heuristics.
"""

import json

from customs_intel.models.enums import NoteType, ParseStrategy
from customs_intel.pipeline.page_parser import (
    convert_legacy_line,
    extract_circular_references,
    extract_notes_from_text,
    page_contains_tariff_table,
    parse_page_response,
)
from customs_intel.schemas.extraction import ExtractedNote


class TestParsePageResponse:

    def test_payload_object(self):
        text = json.dumps({
            "page_number": 7,
            "has_tariff_table": True,
            "raw_lines": [
                {"position_6": "8903.11", "col2": "10", "col3": "00", "description": "à moteur",
                 "duty_rate": 17.5, "unit_norm": "U"},
                "not a row",
                {"position_6": None, "description": None},
            ],
            "notes": [
                {"note_type": "footnote", "anchor": "(a)", "note_text": "Taux applicable sous condition."},
                {"note_type": "unknown-kind", "note_text": "Remarque générale sur le chapitre."},
                {"note_type": "remark"},
            ],
        })
        extraction = parse_page_response(text, 7)

        assert extraction.has_tariff_table
        assert extraction.parse_strategy == ParseStrategy.DIRECT
        assert len(extraction.raw_lines) == 1
        row = extraction.raw_lines[0]
        assert row.position_6 == "8903.11"
        assert row.duty_rate == 17.5
        assert row.page_number == 7

        assert [n.note_type for n in extraction.notes] == [NoteType.FOOTNOTE, NoteType.REMARK]
        assert extraction.notes[0].anchor == "(a)"

    def test_bare_list_payload(self):
        text = json.dumps([{"position_6": "8903.92", "col2": "00", "col3": "00", "duty_rate": "10"}])
        extraction = parse_page_response(text, 2)
        assert len(extraction.raw_lines) == 1
        assert extraction.raw_lines[0].duty_rate == "10"

    def test_model_says_no_table(self):
        text = json.dumps({"has_tariff_table": False, "raw_lines": [], "notes": []})
        extraction = parse_page_response(text, 1)
        assert not extraction.has_tariff_table
        assert extraction.notes == []
        assert extraction.error is None

    def test_non_numeric_values_are_coerced(self):
        text = json.dumps({"raw_lines": [
            {"position_6": 890311, "col2": 10, "col3": "00", "duty_rate": True, "unit_norm": ["U"]},
        ], "notes": []})
        row = parse_page_response(text, 1).raw_lines[0]
        assert row.position_6 == "890311"
        assert row.col2 == "10"
        assert row.duty_rate is None
        assert row.unit_norm is None

    def test_out_of_range_numbers_are_dropped(self):
        text = (
            '{"raw_lines": ['
            '{"position_6": "8903.11", "col2": "10", "col3": "00", '
            '"description": 1e400, "duty_rate": ' + "9" * 400 + '},'
            '{"position_6": "8903.92", "duty_rate": NaN, "unit_norm": -Infinity}'
            '], "notes": []}'
        )
        extraction = parse_page_response(text, 1)
        assert extraction.error is None
        first, second = extraction.raw_lines
        assert first.col2 == "10"
        assert first.description is None
        assert first.duty_rate is None
        assert second.duty_rate is None
        assert second.unit_norm is None

    def test_unparseable_output_uses_text_fallback(self):
        text = (
            "Je n'ai pas pu produire de JSON.\n"
            "8903.11 10 00 Bateaux à moteur 17,5% U\n"
            "8903.92 00 00 Autres bateaux 10% KG"
        )
        extraction = parse_page_response(text, 5)
        assert extraction.parse_strategy == ParseStrategy.FAILED
        assert extraction.error == "JSON parse failed, used fallback"
        assert [row.position_6 for row in extraction.raw_lines] == ["8903.11", "8903.92"]
        assert extraction.raw_lines[0].col2 == "10"
        assert extraction.raw_lines[0].duty_rate == "17,5%"
        assert extraction.has_tariff_table


class TestLegacyConversion:

    def test_prefix_and_position(self):
        row = convert_legacy_line(
            {"col1": "1", "col2": "8903.11", "col3": "Bateaux à moteur", "col4": "17,5", "col5": "U",
             "col6": "10", "col7": "00"},
            3,
        )
        assert row.prefix_col == "1"
        assert row.position_6 == "8903.11"
        assert row.col2 == "10"
        assert row.col3 == "00"
        assert row.description == "Bateaux à moteur"
        assert row.duty_rate == "17,5"
        assert row.unit_norm == "U"

    def test_position_in_first_column(self):
        row = convert_legacy_line({"col1": "8903.92", "col3": "Autres", "col4": "10"}, 1)
        assert row.prefix_col is None
        assert row.position_6 == "8903.92"


class TestTariffPageDetection:

    def test_tariff_page(self):
        text = "TARIF DES DROITS\nCodification  Désignation des produits  Droit d'importation\n8903.11 10 00"
        assert page_contains_tariff_table(text)

    def test_short_page(self):
        assert not page_contains_tariff_table("Position 8903.11")

    def test_prose_page(self):
        text = "Le présent chapitre couvre les navires et autres engins flottants destinés au transport."
        assert not page_contains_tariff_table(text)


class TestNotesHeuristics:

    def test_footnote_and_exclusion(self):
        text = (
            "(a) Ce taux s'applique aux bateaux de plaisance uniquement\n"
            "Le présent chapitre ne comprend pas les hydroglisseurs de la position 8906."
        )
        notes = extract_notes_from_text(text, 4)
        kinds = {n.note_type for n in notes}
        assert NoteType.FOOTNOTE in kinds
        assert NoteType.EXCLUSION in kinds
        assert all(n.page_number == 4 for n in notes)

    def test_circular_references(self):
        notes = [ExtractedNote(
            note_text="Voir la circulaire ADII n° 5432/21 pour les positions 8903.11 et 8903.92.00.",
            page_number=9,
        )]
        refs = extract_circular_references(notes)
        assert len(refs) == 1
        ref = refs[0]
        assert ref.source_ref == "5432/21"
        assert ref.issuer == "ADII"
        assert ref.title == "Circulaire ADII n° 5432/21"
        assert ref.related_hs_codes == ["890311", "89039200"]
        assert ref.page_number == 9

    def test_circular_default_issuer_and_dedup(self):
        notes = [
            ExtractedNote(note_text="Application de la circulaire n° 1234 du 2 mai."),
            ExtractedNote(note_text="Rappel : circulaire n° 1234."),
        ]
        refs = extract_circular_references(notes)
        assert len(refs) == 1
        assert refs[0].issuer == "ADII"
        assert refs[0].related_hs_codes == []
