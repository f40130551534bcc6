"""Prompt text for the tariff, summary and legal text calls."""

PAGE_SYSTEM_PROMPT = (
    "Tu es un expert en tarifs douaniers. Analyse cette page et retourne "
    "les données en JSON structuré."
)

PAGE_JSON_SHAPE = """{
  "page_number": <n>,
  "has_tariff_table": true,
  "raw_lines": [
    {"prefix_col": "8", "position_6": "8903.11", "col2": "10", "col3": "00",
     "national_code": "8903111000", "hs_code_6": "890311",
     "description": "...", "duty_rate": "2,5", "unit_norm": "u", "unit_comp": "N"}
  ],
  "notes": [
    {"note_type": "chapter_note", "anchor": "1", "note_text": "...", "page_number": <n>}
  ]
}"""

PAGE_RULES = """Règles:
- Lis chaque ligne horizontalement; les valeurs d'une ligne appartiennent à cette ligne.
- Code national = position SH (6 chiffres) + col2 (2 chiffres) + col3 (2 chiffres).
- Le chiffre isolé avant la position est un repère d'alignement (prefix_col), pas une partie du code.
- Position ou col2 vides: hériter de la ligne précédente.
- Extraire toutes les notes (chapter_note, section_note, definition, exclusion, footnote, remark).
- Sans tableau tarifaire: "has_tariff_table": false, "raw_lines": [] et les notes de la page."""


def build_page_prompt(title: str, page_number: int, total_pages: int) -> str:
    return (
        f"ANALYSE UNIQUEMENT LA PAGE {page_number}.\n\n"
        f"Expert en tarifs douaniers marocains. Analyse cette PAGE "
        f"{page_number}/{total_pages} du PDF \"{title}\".\n\n"
        f"{PAGE_RULES}\n\n"
        f"Format JSON strict:\n{PAGE_JSON_SHAPE.replace('<n>', str(page_number))}\n\n"
        "RÉPONDS UNIQUEMENT AVEC LE JSON, RIEN D'AUTRE."
    )


def build_summary_prompt(title: str) -> str:
    return (
        f"Résume en 3 à 5 phrases le document \"{title}\": nature du document, "
        "chapitres ou produits couverts, points notables. Réponds en texte simple."
    )


def build_text_extraction_prompt(page_number: int) -> str:
    return (
        f"Transcris intégralement le texte de la PAGE {page_number} de ce document, "
        "dans l'ordre de lecture, sans commentaire. Conserve les numéros d'articles "
        "et les tableaux sous forme de lignes."
    )
