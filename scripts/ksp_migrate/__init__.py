"""kapt to KSP build file migration package."""

from .classifier import Conflict, LeaveAsIs, ManualReview, Migrate, classify
from .cli import main
from .descriptor_models import Descriptor, MigrationIssue
from .descriptor_parser import parse_descriptor, parse_file
from .errors import ConflictError, MigrationError, ParseError, RuleLookupError, RuleTableError
from .pipeline import process_file, run_batch
from .report import build_report, render_json, render_text
from .rewriter import rewrite
from .rule_table import RuleTable, load_rules

__all__ = [
    "main", "classify", "rewrite", "parse_descriptor", "parse_file", "load_rules",
    "process_file", "run_batch", "build_report", "render_text", "render_json",
    "Descriptor", "MigrationIssue", "RuleTable",
    "Migrate", "ManualReview", "Conflict", "LeaveAsIs",
    "MigrationError", "ParseError", "ConflictError", "RuleLookupError", "RuleTableError",
]
