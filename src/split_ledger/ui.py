"""Interactive UI components for expense entry."""

import logging
from typing import Any

from prompt_toolkit import PromptSession
from prompt_toolkit.completion import Completer, Completion
from prompt_toolkit.document import Document

from .models import ExpenseCategory

logger = logging.getLogger(__name__)


def fuzzy_match(query: str, text: str) -> bool:
    """
    Fuzzy match: all characters in query must appear in order in text.

    Example:
        query="gro" matches "Groceries"
        query="fd" matches "Food & Drinks"
    """
    query_idx = 0
    for char in text:
        if query_idx < len(query) and char == query[query_idx]:
            query_idx += 1
    return query_idx == len(query)


class CategoryCompleter(Completer):
    """Fuzzy search completer for expense categories."""

    def __init__(self, categories: list[ExpenseCategory] | None = None):
        self.categories = categories or list(ExpenseCategory)
        self.name_to_category = {cat.display_name: cat for cat in self.categories}

    def matches(self, query: str) -> list[ExpenseCategory]:
        query = query.lower()
        return [
            cat
            for cat in self.categories
            if fuzzy_match(query, cat.display_name.lower())
            or fuzzy_match(query, cat.value)
        ]

    def get_completions(self, document: Document, complete_event: Any):
        """Get fuzzy-matched completions."""
        for cat in self.matches(document.text):
            yield Completion(
                text=cat.display_name,
                start_position=-len(document.text),
                display=cat.display_name,
            )

    def resolve(self, text: str) -> ExpenseCategory | None:
        """Map typed text to a category by display name or value."""
        text = text.strip()
        if text in self.name_to_category:
            return self.name_to_category[text]
        try:
            return ExpenseCategory(text.lower())
        except ValueError:
            return None


def select_category_interactive(
    expense_description: str,
    default: ExpenseCategory = ExpenseCategory.OTHER,
) -> ExpenseCategory:
    """
    Interactive category selection with fuzzy search.

    Args:
        expense_description: Description of the expense being entered
        default: Category used when the prompt is skipped

    Returns:
        Selected category, or the default if the user skips
    """
    print(f"\n📝 Categorize: {expense_description}")
    print("   Type to search, press Enter to confirm, Ctrl+C to skip\n")

    completer = CategoryCompleter()
    session: PromptSession[str] = PromptSession(completer=completer)

    try:
        while True:
            result = session.prompt(
                "Category: ",
                default=default.display_name,
                complete_while_typing=True,
            )

            if not result:
                return default

            category = completer.resolve(result)
            if category is not None:
                logger.info(f"User selected category: {category.display_name}")
                return category

            print("❌ Invalid category. Please select from the list or press Tab to complete.")

    except (KeyboardInterrupt, EOFError):
        print("\n⏭️  Skipped")
        return default
