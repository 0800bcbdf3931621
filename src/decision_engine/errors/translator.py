"""Translate engine errors to user-friendly messages."""

import re
from dataclasses import dataclass
from typing import List, Optional


@dataclass
class UserFriendlyError:
    """User-friendly error representation."""
    original_error: Exception
    title: str
    explanation: str
    actions: List[str]
    documentation: Optional[str] = None
    show_technical: bool = False


class ErrorTranslator:
    """Translate technical errors to user-friendly messages."""

    ERROR_PATTERNS = {
        r"StaleEligibilityError": {
            "title": "Operation is not available right now",
            "explanation": "The run moved on since you last looked. The operation is either finished or still waiting on earlier steps.",
            "actions": [
                "Refresh the eligible list: decision-engine eligible <run-id>",
                "Retry the decision against one of the listed operations",
            ],
        },

        r"InvalidTransitionError.*may be skipped": {
            "title": "This operation cannot be skipped",
            "explanation": "Only optional operations, or operations that have a fallback operation, can be skipped.",
            "actions": [
                "Complete the operation instead",
                "Mark the operation optional or give it a fallback in a new tree version",
            ],
        },

        r"InvalidTransitionError": {
            "title": "Conflicting status for this operation",
            "explanation": "The history already holds a different status for this operation. Records are never edited.",
            "actions": [
                "Reload the run history: decision-engine history <run-id>",
                "Check whether someone else already recorded this operation",
            ],
        },

        r"UnresolvedBranchError": {
            "title": "No branch matched",
            "explanation": "None of the operation's conditions matched the recorded answers and the tree has no catch-all branch, so the run cannot advance past it.",
            "actions": [
                "Publish a corrected tree version with a fallback condition",
                "Contact support for a manual override of this run",
            ],
        },

        r"GraphValidationError": {
            "title": "Decision tree is not valid",
            "explanation": "The tree has structural problems and was rejected before any run could use it.",
            "actions": [
                "Check the listed problems (cycles, missing operations, duplicate priorities)",
                "Fix the definition and validate again: decision-engine validate <file>",
            ],
        },

        r"ConfigurationError": {
            "title": "Condition could not be evaluated",
            "explanation": "A condition uses an unknown type or malformed data. It is treated as not matching.",
            "actions": [
                "Use one of: always, field_equals, field_not_equals, field_in_set, field_not_in_set, field_present",
                "Enable resolver.strict_condition_types to reject such trees at publish time",
            ],
        },

        r"TreeNotFoundError": {
            "title": "Decision tree not found",
            "explanation": "The project has no active tree, or the referenced tree version does not exist.",
            "actions": [
                "List versions: decision-engine trees <project-id>",
                "Publish a tree: decision-engine publish <project-id> <file>",
            ],
        },

        r"RunNotFoundError": {
            "title": "Run not found",
            "explanation": "No run exists with this id in the configured workspace.",
            "actions": [
                "Check the run id",
                "Check --workspace points at the right data directory",
            ],
        },

        r"HistoryCorruptedError": {
            "title": "Run history is unreadable",
            "explanation": "A stored history record could not be read, so the run's state cannot be rebuilt safely.",
            "actions": [
                "Restore <data_dir>/history/<run-id>.jsonl from a backup",
                "Do not record further decisions for this run until the file is repaired",
            ],
            "show_technical": True,
        },

        r"LockTimeoutError": {
            "title": "Run history is busy",
            "explanation": "Another process held the history lock for too long.",
            "actions": [
                "Try again in a few seconds",
                "Remove stale lock directories under <data_dir>/locks if no other process is running",
            ],
        },

        r"Tree definition not found|Config file not found": {
            "title": "File not found",
            "explanation": "A file passed on the command line does not exist.",
            "actions": [
                "Check the path and try again",
            ],
        },

        r"ValidationError": {
            "title": "Definition file has the wrong shape",
            "explanation": "The YAML document does not match the tree definition format.",
            "actions": [
                "Check the field names listed in the technical details",
                "Compare with the format documented in decision_engine.workflow.definitions",
            ],
            "show_technical": True,
        },
    }

    def translate(self, error: Exception) -> UserFriendlyError:
        """Convert exception to user-friendly format."""
        error_str = str(error)
        error_type = type(error).__name__
        full_error = f"{error_type}: {error_str}"

        for pattern, translation in self.ERROR_PATTERNS.items():
            if re.search(pattern, full_error, re.IGNORECASE):
                return UserFriendlyError(
                    original_error=error,
                    title=translation["title"],
                    explanation=translation["explanation"],
                    actions=translation["actions"],
                    documentation=translation.get("documentation"),
                    show_technical=translation.get("show_technical", False),
                )

        # Fallback for unknown errors
        return UserFriendlyError(
            original_error=error,
            title="Unexpected error",
            explanation=error_str,
            actions=[
                "Run again with --log-level DEBUG",
                "Check logs for details",
            ],
            show_technical=True,
        )

    def format_for_cli(self, friendly_error: UserFriendlyError) -> str:
        """Format error for CLI display."""
        output = f"[bold red]{friendly_error.title}[/]\n\n"
        output += f"{friendly_error.explanation}\n\n"

        output += "[bold]How to fix:[/]\n"
        for i, action in enumerate(friendly_error.actions, 1):
            output += f"  {i}. {action}\n"

        if friendly_error.documentation:
            output += f"\n[dim]Learn more: {friendly_error.documentation}[/]"

        if friendly_error.show_technical:
            output += f"\n\n[dim]Technical details:[/]\n[dim]{friendly_error.original_error}[/]"

        return output
