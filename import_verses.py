"""
Pull whole chapters of a public-domain translation from bible-api.com and
merge them into bible_seed.json, then load them with ``flask --app app seed``.

    python import_verses.py KJV JHN 1-3
    python import_verses.py WEB PSA 23 --seed-file other_seed.json
"""
import json
import re

import click
import requests

# ----------------------------
# CONFIG
# ----------------------------
API_URL = "https://bible-api.com/{book}+{chapter}"
SEED_FILE = "bible_seed.json"
REQUEST_TIMEOUT = 30  # seconds

# Seed translation code -> bible-api.com translation id
API_TRANSLATIONS = {
    "KJV": "kjv",
    "WEB": "web",
    "ASV": "asv",
    "BBE": "bbe",
}


# ----------------------------
# Normalize spacing
# ----------------------------
def normalize_text(text):
    # Poetry comes back with embedded line breaks.
    text = text.strip()
    text = re.sub(r'\s+', ' ', text)
    return text


def parse_chapters(text):
    """'1-3,5' -> [1, 2, 3, 5]"""
    chapters = set()
    for part in text.split(","):
        part = part.strip()
        if not part:
            continue
        if "-" in part:
            lo, hi = (int(x) for x in part.split("-", 1))
            if lo > hi:
                raise ValueError(f"bad chapter range {part!r}")
            chapters.update(range(lo, hi + 1))
        else:
            chapters.add(int(part))
    if not chapters or min(chapters) < 1:
        raise ValueError(f"bad chapter list {text!r}")
    return sorted(chapters)


# ----------------------------
# Fetch one chapter
# ----------------------------
def fetch_chapter(book_name, chapter, api_translation):
    url = API_URL.format(book=book_name.replace(" ", "+"), chapter=chapter)
    response = requests.get(url, params={"translation": api_translation}, timeout=REQUEST_TIMEOUT)
    response.raise_for_status()
    return response.json().get("verses", [])


# ----------------------------
# Convert API rows to seed rows
# ----------------------------
def to_seed_rows(api_verses, translation_code, book_code):
    rows = []
    for v in api_verses:
        content = normalize_text(v.get("text", ""))
        if not content:
            continue
        rows.append({
            "translation": translation_code,
            "book": book_code,
            "chapter": int(v["chapter"]),
            "verse": int(v["verse"]),
            "content": content,
        })
    return rows


# ----------------------------
# Merge into the seed file
# ----------------------------
def merge_verses(seed, rows):
    """Add rows whose reference is not already in ``seed``. Returns the number added."""
    verses = seed.setdefault("verses", [])
    seen = {(v["translation"], v["book"], v["chapter"], v["verse"]) for v in verses}
    added = 0
    for row in rows:
        key = (row["translation"], row["book"], row["chapter"], row["verse"])
        if key in seen:
            continue
        verses.append(row)
        seen.add(key)
        added += 1
    verses.sort(key=lambda v: (v["translation"], v["book"], v["chapter"], v["verse"]))
    return added


def find_book(seed, book_code):
    for book in seed.get("books", []):
        if book["code"] == book_code:
            return book
    return None


# ----------------------------
# Main
# ----------------------------
@click.command()
@click.argument("translation")
@click.argument("book")
@click.argument("chapters")
@click.option("--seed-file", default=SEED_FILE, show_default=True)
def main(translation, book, chapters, seed_file):
    """Download CHAPTERS of BOOK in TRANSLATION and merge them into the seed file."""
    translation = translation.upper()
    book = book.upper()
    if translation not in API_TRANSLATIONS:
        raise click.BadParameter(
            f"choose one of {', '.join(sorted(API_TRANSLATIONS))}", param_hint="TRANSLATION")
    try:
        chapter_list = parse_chapters(chapters)
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="CHAPTERS")

    with open(seed_file, "r", encoding="utf-8") as f:
        seed = json.load(f)
    if not any(t["code"] == translation for t in seed.get("translations", [])):
        raise click.ClickException(f"{translation} is not listed under translations in {seed_file}")
    book_row = find_book(seed, book)
    if book_row is None:
        raise click.ClickException(f"{book} is not listed under books in {seed_file}")

    total = 0
    for chapter in chapter_list:
        if chapter > book_row["chapters"]:
            click.echo(f"Skipping {book} {chapter}: book has {book_row['chapters']} chapters")
            continue
        click.echo(f"Downloading {book_row['nameEn']} {chapter} ({translation})...")
        api_verses = fetch_chapter(book_row["nameEn"], chapter, API_TRANSLATIONS[translation])
        added = merge_verses(seed, to_seed_rows(api_verses, translation, book))
        click.echo(f"  {len(api_verses)} verses, {added} new")
        total += added

    with open(seed_file, "w", encoding="utf-8") as f:
        json.dump(seed, f, ensure_ascii=False, indent=2)

    click.echo(f"Saved {total} new verses to {seed_file}")


if __name__ == "__main__":
    main()
