import json
from typing import Any, Optional

import llm  # type: ignore

from . import db

hookimpl = llm.hookimpl  # type: ignore


def _load_model(model: Optional[str]) -> Any:
    if not model or model == "none":
        return None
    try:
        return llm.get_model(model)
    except Exception as e:
        print(f"⚠️ Could not load model '{model}', continuing without it: {e}")
        return None


@hookimpl  # type: ignore[misc]
def register_commands(cli: Any) -> None:
    import click

    @cli.command("vi-init-db")  # type: ignore[misc]
    def init_db() -> None:
        """Initialize the Vietnamese learning database."""
        db.init_db()
        click.echo("Database initialized.")

    @cli.command("vi-import-flashcards")  # type: ignore[misc]
    @click.argument("csv_path", type=click.Path(exists=True, dir_okay=False))
    def import_flashcards(csv_path: str) -> None:
        """Import catalog flashcards from a CSV file."""
        from .flashcards import import_flashcards_csv
        db.init_db()
        count = import_flashcards_csv(csv_path)
        click.echo(f"Imported {count} flashcards.")

    @cli.command("vi-add-flashcard")  # type: ignore[misc]
    @click.argument("vietnamese")
    @click.argument("english", nargs=-1, required=True)
    @click.option("--topic", "topics", multiple=True, help="Topic name (repeatable)")
    @click.option("--type", "word_type", default=None, help="Word type, e.g. noun or verb")
    @click.option("--complexity", type=click.Choice(["simple", "complex"]), default="simple")
    @click.option("--common", "common_class", default=None, help="Common-word class")
    def add_flashcard(vietnamese: str, english: tuple, topics: tuple, word_type: Optional[str],
                      complexity: str, common_class: Optional[str]) -> None:
        """Add one flashcard with one or more English meanings."""
        from .flashcards import add_flashcard as _add
        is_new = _add(
            vietnamese, list(english),
            type=word_type,
            topic=list(topics),
            text_complexity=complexity,
            common_class=common_class,
            is_multiword=" " in vietnamese.strip(),
            is_multimeaning=len(english) > 1,
        )
        if is_new:
            click.echo(f"Flashcard '{vietnamese}' added.")
        else:
            click.echo(f"Flashcard '{vietnamese}' already exists (skipped).")

    @cli.command("vi-due")  # type: ignore[misc]
    @click.option("--user", default="default_user", help="Learner name")
    @click.option("--limit", default=20, type=int, help="Maximum cards to list")
    def due(user: str, limit: int) -> None:
        """List flashcards due for review."""
        from .review import get_due_flashcards
        cards = get_due_flashcards(user, limit)
        if not cards:
            click.echo("🎉 No flashcards are due for review! All caught up!")
            return
        for card in cards:
            click.echo(f"{card['id']}: {card['vietnamese']} - {', '.join(card['english'])} "
                       f"(due {card['review']['due_date']})")

    @cli.command("vi-review-card")  # type: ignore[misc]
    @click.argument("flashcard_id")
    @click.argument("quality", type=int)
    @click.option("--user", default="default_user", help="Learner name")
    def review_card(flashcard_id: str, quality: int, user: str) -> None:
        """Grade a flashcard 0-5 and reschedule it."""
        from .review import review_flashcard_quality
        if quality < 0 or quality > 5:
            click.echo("Quality must be between 0-5 (0=forgot, 3=remembered with effort, 5=easy)")
            return
        result = review_flashcard_quality(user, flashcard_id, quality)
        if quality >= 3:
            click.echo(f"Good! '{flashcard_id}' next due {result['due_date']}.")
        else:
            click.echo(f"That's okay! '{flashcard_id}' will be reviewed again on {result['due_date']}.")

    @cli.command("vi-stats")  # type: ignore[misc]
    @click.option("--user", default="default_user", help="Learner name")
    def stats(user: str) -> None:
        """Show review statistics for a learner."""
        from .statistics import get_quick_stats
        quick = get_quick_stats(user)
        click.echo(f"Progress for {user}:")
        click.echo(f"  Cards reviewed: {quick['total_cards_reviewed']}")
        click.echo(f"  Accuracy: {quick['accuracy_rate']:.1f}%")
        click.echo(f"  Current streak: {quick['current_streak']} days")
        click.echo(f"  Study time: {quick['total_time_minutes']} minutes")
        click.echo(f"  Last study date: {quick['last_study_date'] or 'never'}")

    @cli.command("vi-search")  # type: ignore[misc]
    @click.argument("query")
    @click.option("--type", "search_type", type=click.Choice(["grammar", "folklore", "both"]), default="both")
    @click.option("--max-results", default=5, type=int)
    @click.option("--model", default="none", help="LLM model for keyword extraction")
    def search(query: str, search_type: str, max_results: int, model: str) -> None:
        """Search the grammar and folklore knowledge base."""
        from .rag import search_knowledge_base
        result = search_knowledge_base(query, search_type, max_results, _load_model(model))
        click.echo(f"{result['message']} ({result['intent']['search_type']}, "
                   f"{result['response_time_ms']} ms)")
        click.echo(result["context"])
        for tip in result["refinements"]:
            click.echo(f"💡 {tip}")

    @cli.command("vi-add-grammar-chunk")  # type: ignore[misc]
    @click.argument("content")
    @click.option("--context", "contextualized", default=None, help="Contextualised version of the chunk")
    @click.option("--category-vi", default=None)
    @click.option("--category-en", default=None)
    @click.option("--metadata", "metadata_json", default="{}", help="Metadata as a JSON object")
    def add_grammar_chunk(content: str, contextualized: Optional[str], category_vi: Optional[str],
                          category_en: Optional[str], metadata_json: str) -> None:
        """Add a grammar knowledge chunk with embeddings."""
        from .rag import add_grammar_chunk as _add
        try:
            metadata = json.loads(metadata_json)
        except json.JSONDecodeError as e:
            raise click.BadParameter(f"metadata must be JSON: {e}")
        chunk_id = _add(content, contextualized, category_vi, category_en, metadata)
        click.echo(f"Grammar chunk {chunk_id} added.")

    @cli.command("vi-add-folklore")  # type: ignore[misc]
    @click.argument("vietnamese")
    @click.option("--type", "folklore_type", type=click.Choice(["proverb", "idiom", "folk_song"]), default="proverb")
    @click.option("--english", default=None, help="English rendering")
    @click.option("--meaning", default=None, help="English definition")
    @click.option("--category-en", default=None)
    def add_folklore(vietnamese: str, folklore_type: str, english: Optional[str], meaning: Optional[str],
                     category_en: Optional[str]) -> None:
        """Add a proverb, idiom or folk song."""
        from .rag import add_folklore_chunk
        chunk_id = add_folklore_chunk(folklore_type, [vietnamese], [english] if english else [],
                                      category_en=category_en, definition_en=meaning)
        click.echo(f"{folklore_type.replace('_', ' ').capitalize()} {chunk_id} added.")
