"""
Utility functions for the NPR API library

Handles import reporting and user-facing messages. Report entries collect
in memory during a run; save_reports moves them into the content store so
later invocations can print them.
"""

from typing import Any, Callable, Dict, List, Optional, Tuple

REPORT_STATE_KEY = "import_report"

# Entries kept per status in the stored report
REPORT_LIMIT = 500

# Global reports dictionary
reports: Dict[str, List[Tuple[Any, str]]] = {
    "created": [],
    "updated": [],
    "skipped": [],
    "error": [],
}


def report(status: str, story_id: Any, message: str) -> bool:
    """Add a report entry to the global reports dictionary"""
    if status in reports.keys():
        reports[status].append((story_id, message))
        return True
    else:
        return False


def report_out(report_dict: Optional[Dict[str, List[Tuple[Any, str]]]] = None) -> None:
    """Print out a formatted report from the reports dictionary"""
    report_dict = reports if report_dict is None else report_dict
    print("\n")
    for key in report_dict.keys():
        for story_id, message in report_dict[key]:
            print(key.upper())
            print(f"\t{story_id}")
            print(f"\t{message}")
    print("=======================================================================")


def clear_reports() -> None:
    """Clear all report entries"""
    for key in reports.keys():
        reports[key].clear()


def get_report_summary(report_dict: Optional[Dict[str, List[Tuple[Any, str]]]] = None) -> Dict[str, int]:
    """Get a summary of report counts"""
    report_dict = reports if report_dict is None else report_dict
    summary = {}
    for key, items in report_dict.items():
        summary[key] = len(items)
    return summary


def load_reports(store) -> Dict[str, List[Tuple[Any, str]]]:
    """The report saved in the content store, one list per status"""
    stored = store.get_state(REPORT_STATE_KEY) or {}
    return {key: [tuple(entry) for entry in stored.get(key, [])] for key in reports.keys()}


def save_reports(store) -> None:
    """
    Append the in-memory entries to the stored report, then clear them.
    Only the newest REPORT_LIMIT entries per status are kept.
    """
    stored = load_reports(store)
    for key, items in reports.items():
        stored[key] = (stored[key] + list(items))[-REPORT_LIMIT:]
    store.set_state(REPORT_STATE_KEY, stored)
    clear_reports()


def delete_reports(store) -> None:
    store.delete_state(REPORT_STATE_KEY)
    clear_reports()


class Messenger:
    """Collects status and error messages meant for the person running an import"""

    def __init__(self, output: Optional[Callable[[str], None]] = None):
        self.output = output
        self.messages: Dict[str, List[str]] = {"status": [], "error": []}

    def add_status(self, text: str):
        self.messages["status"].append(text)
        if self.output:
            self.output(text)

    def add_error(self, text: str):
        self.messages["error"].append(text)
        if self.output:
            self.output(f"Error: {text}")

    def all(self) -> List[str]:
        return self.messages["status"] + self.messages["error"]

    def clear(self):
        for messages in self.messages.values():
            messages.clear()


class ImportNotifier:
    """
    Logs import messages and, when display is on, passes them to a Messenger.
    Shared by the story mapper and the media importer.
    """

    def __init__(self, logger, messenger: Optional[Messenger] = None):
        self.logger = logger
        self.messenger = messenger
        self.display_messages = False

    def error(self, text: str):
        self.logger.error(text)
        if self.display_messages and self.messenger:
            self.messenger.add_error(text)

    def status(self, text: str):
        self.logger.info(text)
        if self.display_messages and self.messenger:
            self.messenger.add_status(text)
