"""
CLI main entry point.
"""

import argparse
import getpass
import logging
import sys
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, timedelta
from pathlib import Path

from ..bank_client import FioClient
from ..categorization import OpenAICategorizationProvider, RuleBook, RuleNotFoundError
from ..config import Config, create_default_config, load_config
from ..errors import (
    AccountNotFoundError,
    BudgetBridgeError,
    IllegalStateError,
)
from ..retry import RetryPolicy
from ..schemas.events import EventRecorder, log_event
from ..schemas.rules import PatternType, RuleStatus
from ..schemas.transaction import SourceAccount, TransactionId
from ..services import (
    CategorizationWorkflow,
    ImportWorkflow,
    ReviewService,
    SubmissionWorkflow,
    ai_matcher,
    rule_matcher,
)
from ..state_store import StateStore
from ..vault import CredentialVault
from ..ynab_client import YnabClient

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


@dataclass
class AppContext:
    """Explicitly wired application objects for one CLI invocation."""

    config: Config
    store: StateStore
    vault: CredentialVault
    rulebook: RuleBook
    review: ReviewService
    events: EventRecorder = field(default_factory=EventRecorder)
    _closers: list[Callable[[], None]] = field(default_factory=list, repr=False)

    def emit(self, event) -> None:
        log_event(event)
        self.events(event)

    def _track(self, client):
        close = getattr(client, "close", None)
        if callable(close):
            self._closers.append(close)
        return client

    def close(self) -> None:
        """Release HTTP clients created for this invocation."""
        while self._closers:
            self._closers.pop()()

    def import_workflow(self) -> ImportWorkflow:
        bank = FioClient(
            base_url=self.config.bank.base_url,
            timeout=self.config.bank.timeout_seconds,
            max_retries=self.config.bank.max_retries,
        )
        self._track(bank)
        return ImportWorkflow(
            store=self.store,
            vault=self.vault,
            provider=bank,
            max_import_days=self.config.bank.max_import_days,
            event_sink=self.emit,
        )

    def categorization_workflow(self) -> CategorizationWorkflow:
        llm = self.config.llm
        matchers = [rule_matcher(self.rulebook)]
        if llm.enabled:
            provider = OpenAICategorizationProvider(
                llm, categories=[c.name for c in self.store.list_categories()]
            )
            self._track(provider)
            policy = RetryPolicy(
                max_attempts=llm.max_retries,
                initial_delay=llm.retry_initial_delay,
                max_delay=llm.retry_max_delay,
                deadline=llm.retry_deadline_seconds,
            )
            matchers.append(ai_matcher(provider, policy, self.rulebook))
        else:
            logger.info("LLM categorization disabled, using approved rules only")
        return CategorizationWorkflow(
            store=self.store,
            matchers=matchers,
            max_concurrent=llm.max_concurrent,
            event_sink=self.emit,
        )

    def budget_client(self) -> YnabClient:
        client = YnabClient(
            base_url=self.config.budget.base_url,
            token=self.config.budget.token,
            budget_id=self.config.budget.budget_id,
            timeout=self.config.budget.timeout_seconds,
            max_retries=self.config.budget.max_retries,
        )
        return self._track(client)

    def submission_workflow(self) -> SubmissionWorkflow:
        return SubmissionWorkflow(
            store=self.store,
            port=self.budget_client(),
            max_concurrent=self.config.submission.max_concurrent,
            cleared=self.config.submission.cleared,
            auto_approve=self.config.submission.auto_approve,
            event_sink=self.emit,
        )


def build_context(config: Config) -> AppContext:
    """Wire store, vault and services from configuration."""
    store = StateStore(config.state_db_path)
    vault = CredentialVault(
        store,
        encryption_key=config.vault.encryption_key,
        cache_ttl_seconds=config.vault.token_cache_minutes * 60,
        persist_audit=config.vault.persist_audit,
    )
    return AppContext(
        config=config,
        store=store,
        vault=vault,
        rulebook=RuleBook(store),
        review=ReviewService(store),
    )


def _date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid date '{value}', expected YYYY-MM-DD") from None


def _transaction_id(value: str) -> TransactionId:
    account_id, sep, provider_id = value.partition(":")
    if not sep or not account_id or not provider_id:
        raise argparse.ArgumentTypeError(
            f"Invalid transaction id '{value}', expected ACCOUNT:PROVIDER_ID"
        )
    return TransactionId(account_id, provider_id)


def create_cli() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="budget-bridge",
        description="Import bank transactions, categorize them and submit them to YNAB",
    )

    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=Path("config.yaml"),
        help="Path to config file (default: config.yaml)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # init-config command
    subparsers.add_parser("init-config", help="Write a default config file")

    # add-account command
    account_parser = subparsers.add_parser("add-account", help="Register a bank account")
    account_parser.add_argument("account_id", help="Local account id")
    account_parser.add_argument("--name", default="", help="Display name")
    account_parser.add_argument("--number", default="", help="Bank account number")
    account_parser.add_argument("--bank-code", default="", help="Bank code")
    account_parser.add_argument("--currency", default="CZK", help="Currency (default: CZK)")
    account_parser.add_argument(
        "--budget-account",
        help="YNAB account id transactions of this account are submitted to",
    )

    # store-token command
    token_parser = subparsers.add_parser("store-token", help="Store the bank API token")
    token_parser.add_argument("account_id", help="Local account id")
    token_parser.add_argument(
        "--token",
        help="Token value (prompted for when omitted)",
    )

    # import command
    import_parser = subparsers.add_parser("import", help="Import bank transactions")
    import_parser.add_argument("account_id", help="Local account id")
    import_parser.add_argument("--from", dest="date_from", type=_date, help="Start date")
    import_parser.add_argument("--to", dest="date_to", type=_date, help="End date")
    import_parser.add_argument(
        "--days",
        type=int,
        default=30,
        help="Days back from today when --from is omitted (default: 30)",
    )

    # categorize command
    categorize_parser = subparsers.add_parser(
        "categorize", help="Categorize imported transactions"
    )
    categorize_parser.add_argument("--account", help="Only this account")

    # submit command
    submit_parser = subparsers.add_parser("submit", help="Submit categorized transactions")
    submit_parser.add_argument("--account", help="Only this account")
    submit_parser.add_argument(
        "ids",
        nargs="*",
        type=_transaction_id,
        help="Explicit transaction ids (ACCOUNT:PROVIDER_ID)",
    )

    # pipeline command
    pipeline_parser = subparsers.add_parser(
        "pipeline", help="Run full pipeline (import → categorize → submit)"
    )
    pipeline_parser.add_argument("account_id", help="Local account id")
    pipeline_parser.add_argument(
        "--days",
        type=int,
        default=30,
        help="Days back from today to import (default: 30)",
    )
    pipeline_parser.add_argument(
        "--no-submit",
        action="store_true",
        help="Stop after categorization",
    )

    # status command
    subparsers.add_parser("status", help="Show pipeline status and statistics")

    # rules command
    rules_parser = subparsers.add_parser("rules", help="Manage payee cleanup rules")
    rules_sub = rules_parser.add_subparsers(dest="rules_command")
    rules_list = rules_sub.add_parser("list", help="List rules")
    rules_list.add_argument(
        "--status",
        choices=[s.value for s in RuleStatus],
        help="Only rules with this status",
    )
    rules_add = rules_sub.add_parser("add", help="Add an approved rule")
    rules_add.add_argument("pattern")
    rules_add.add_argument("replacement")
    rules_add.add_argument(
        "--type",
        dest="pattern_type",
        default=PatternType.CONTAINS.value,
        choices=[p.value for p in PatternType],
        help="Pattern type (default: CONTAINS)",
    )
    rules_add.add_argument("--category", help="Category assigned by this rule")
    rules_approve = rules_sub.add_parser("approve", help="Approve a pending rule")
    rules_approve.add_argument("rule_id")
    rules_approve.add_argument("--replacement", help="Corrected replacement")
    rules_approve.add_argument("--category", help="Category assigned by this rule")
    rules_reject = rules_sub.add_parser("reject", help="Reject a pending rule")
    rules_reject.add_argument("rule_id")
    rules_feedback = rules_sub.add_parser(
        "feedback", help="Record whether a rule cleaned a payee correctly"
    )
    rules_feedback.add_argument("rule_id")
    verdict = rules_feedback.add_mutually_exclusive_group(required=True)
    verdict.add_argument("--good", dest="was_successful", action="store_true")
    verdict.add_argument("--bad", dest="was_successful", action="store_false")

    # override command
    override_parser = subparsers.add_parser(
        "override", help="Set payee/category/memo for a transaction"
    )
    override_parser.add_argument("transaction_id", type=_transaction_id)
    override_parser.add_argument("--payee")
    override_parser.add_argument("--category")
    override_parser.add_argument("--memo")

    # retry command
    retry_parser = subparsers.add_parser("retry", help="Retry a FAILED transaction")
    retry_parser.add_argument("transaction_id", type=_transaction_id)

    # categories command
    categories_parser = subparsers.add_parser("categories", help="Budget categories")
    categories_sub = categories_parser.add_subparsers(dest="categories_command")
    categories_sub.add_parser("sync", help="Fetch categories from YNAB")
    categories_sub.add_parser("list", help="List local categories")

    return parser


def cmd_init_config(config_path: Path) -> int:
    """Write a default config file."""
    if config_path.exists():
        print(f"❌ {config_path} already exists")
        return 1
    create_default_config(config_path)
    print(f"✓ Wrote default configuration to {config_path}")
    return 0


def cmd_add_account(
    ctx: AppContext,
    account_id: str,
    name: str,
    number: str,
    bank_code: str,
    currency: str,
    budget_account: str | None,
) -> int:
    """Register or update a source account."""
    ctx.store.save_account(
        SourceAccount(
            id=account_id,
            name=name or account_id,
            account_number=number,
            bank_code=bank_code,
            currency=currency,
            external_account_id=budget_account,
        )
    )
    print(f"✓ Saved account '{account_id}'")
    if not budget_account:
        print("  ⚠️  No --budget-account mapping: transactions cannot be submitted yet")
    return 0


def cmd_store_token(ctx: AppContext, account_id: str, token: str | None) -> int:
    """Encrypt and store the bank token for an account."""
    if token is None:
        token = getpass.getpass(f"Bank API token for {account_id}: ")
    try:
        ctx.vault.store_token(account_id, token)
    except AccountNotFoundError:
        print(f"❌ Unknown account '{account_id}', run add-account first")
        return 1
    except ValueError as e:
        print(f"❌ {e}")
        return 1
    print(f"✓ Token stored for '{account_id}'")
    return 0


def cmd_import(
    ctx: AppContext,
    account_id: str,
    date_from: date | None,
    date_to: date | None,
    days: int,
) -> int:
    """Import bank transactions for one account."""
    date_to = date_to or date.today()
    date_from = date_from or date_to - timedelta(days=days)
    print(f"📥 Importing {account_id}: {date_from} → {date_to}")

    try:
        result = ctx.import_workflow().import_transactions(account_id, date_from, date_to)
    except BudgetBridgeError as e:
        print(f"❌ Import failed: {e}")
        return 1

    print(f"\n✓ Batch {result.batch.id}")
    print(f"  New:        {result.new_count}")
    print(f"  Duplicates: {result.duplicate_count}")
    for failure in result.failures:
        print(f"  ⚠️  {failure.transaction_id}: {failure.reason}")
    return 0 if result.success else 1


def cmd_categorize(ctx: AppContext, account_id: str | None) -> int:
    """Categorize imported transactions."""
    print("🏷️  Categorizing imported transactions...")
    try:
        result = ctx.categorization_workflow().categorize_pending(account_id)
    except BudgetBridgeError as e:
        print(f"❌ Categorization failed: {e}")
        return 1

    print(f"\n✓ Categorized: {result.categorized}")
    print(f"  No category: {result.uncategorized}")
    if result.categorized:
        print(f"  Avg confidence: {result.average_confidence.value:.0%}")
    for failure in result.failures:
        print(f"  ⚠️  {failure.transaction_id}: {failure.reason}")
    return 0 if result.success else 1


def cmd_submit(ctx: AppContext, account_id: str | None, ids: list[TransactionId]) -> int:
    """Submit categorized transactions to YNAB."""
    errors = ctx.config.validate_for_submission()
    if errors:
        for error in errors:
            print(f"❌ {error}")
        return 1

    print("📤 Submitting transactions to YNAB...")
    workflow = ctx.submission_workflow()
    result = workflow.submit(ids) if ids else workflow.submit_ready(account_id)

    print(f"\n✓ Submitted: {result.submitted}")
    for failure in result.failures:
        print(f"  ⚠️  {failure.transaction_id}: {failure.reason}")
    return 0 if result.success else 1


def cmd_pipeline(ctx: AppContext, account_id: str, days: int, no_submit: bool) -> int:
    """Run full pipeline."""
    print("🚀 Running full pipeline...\n")

    print("Step 1/3: Importing...")
    result = cmd_import(ctx, account_id, None, None, days)
    if result != 0:
        return result

    print("\nStep 2/3: Categorizing...")
    result = cmd_categorize(ctx, account_id)
    if result != 0:
        return result

    if no_submit:
        print("\nStep 3/3: Submit (skipped)")
        return 0

    print("\nStep 3/3: Submitting...")
    return cmd_submit(ctx, account_id, [])


def cmd_status(ctx: AppContext) -> int:
    """Show pipeline status."""
    stats = ctx.store.get_stats()

    print("\n📊 Pipeline Status")
    print("=" * 40)
    print(f"  Transactions total:     {stats['transactions_total']}")
    print(f"  Imported:               {stats['imported']}")
    print(f"  Categorized:            {stats['categorized']}")
    print(f"  Submitted:              {stats['submitted']}")
    print(f"  Failed:                 {stats['failed']}")
    print(f"  Duplicates:             {stats['duplicates']}")
    print(f"  Pending rules:          {stats['pending_rules']}")
    print(f"  Import batches:         {stats['import_batches']}")

    batches = ctx.store.list_batches(limit=5)
    if batches:
        print("\nRecent imports:")
        for batch in batches:
            print(
                f"  {batch.id}  {batch.status.value:<11} "
                f"{batch.date_from} → {batch.date_to}  "
                f"new={batch.new_count} dup={batch.duplicate_count}"
            )
    print()
    return 0


def cmd_rules(ctx: AppContext, parsed: argparse.Namespace) -> int:
    """Manage cleanup rules."""
    command = parsed.rules_command or "list"
    try:
        if command == "list":
            status = RuleStatus(parsed.status) if getattr(parsed, "status", None) else None
            rules = ctx.store.list_rules(status)
            if not rules:
                print("No rules")
            for rule in rules:
                category = f" [{rule.category}]" if rule.category else ""
                print(
                    f"  {rule.id}  {rule.status.value:<8} {rule.pattern_type.value:<11} "
                    f"'{rule.pattern}' → '{rule.replacement}'{category} "
                    f"(used {rule.usage_count}x, {rule.success_rate:.0%})"
                )
            return 0
        if command == "add":
            rule = ctx.rulebook.create_rule(
                parsed.pattern,
                PatternType(parsed.pattern_type),
                parsed.replacement,
                parsed.category,
            )
            print(f"✓ Added rule {rule.id}")
            return 0
        if command == "approve":
            ctx.rulebook.approve(parsed.rule_id, parsed.replacement, parsed.category)
            print(f"✓ Approved rule {parsed.rule_id}")
            return 0
        if command == "reject":
            ctx.rulebook.reject(parsed.rule_id)
            print(f"✓ Rejected rule {parsed.rule_id}")
            return 0
        if command == "feedback":
            rule = ctx.rulebook.provide_feedback(parsed.rule_id, parsed.was_successful)
            print(f"✓ Rule {rule.id} success rate is now {rule.success_rate:.0%}")
            return 0
    except (RuleNotFoundError, ValueError) as e:
        print(f"❌ {e}")
        return 1
    return 1


def cmd_override(
    ctx: AppContext,
    transaction_id: TransactionId,
    payee: str | None,
    category: str | None,
    memo: str | None,
) -> int:
    """Apply user overrides."""
    try:
        state = ctx.review.override(transaction_id, payee=payee, category=category, memo=memo)
    except IllegalStateError as e:
        print(f"❌ {e}")
        return 1
    print(f"✓ {transaction_id} is now {state.status.value}")
    blockers = state.submission_blockers()
    if blockers:
        print(f"  Not ready to submit: {', '.join(blockers)}")
    return 0


def cmd_retry(ctx: AppContext, transaction_id: TransactionId) -> int:
    """Retry a FAILED transaction."""
    try:
        state = ctx.review.retry(transaction_id)
    except IllegalStateError as e:
        print(f"❌ {e}")
        return 1
    print(f"✓ {transaction_id} is now {state.status.value}")
    return 0


def cmd_categories(ctx: AppContext, command: str | None) -> int:
    """Sync or list budget categories."""
    if command == "sync":
        errors = ctx.config.validate_for_submission()
        if errors:
            for error in errors:
                print(f"❌ {error}")
            return 1
        try:
            categories = ctx.budget_client().list_categories()
        except BudgetBridgeError as e:
            print(f"❌ Category sync failed: {e}")
            return 1
        for category in categories:
            ctx.store.save_category(category)
        print(f"✓ Synced {len(categories)} categories")
        return 0

    for category in ctx.store.list_categories():
        mapped = "" if category.external_id else "  (not mapped)"
        print(f"  {category.name}{mapped}")
    return 0


def dispatch(ctx: AppContext, parsed: argparse.Namespace, parser: argparse.ArgumentParser) -> int:
    """Route a parsed command line to its handler."""
    if parsed.command == "add-account":
        return cmd_add_account(
            ctx,
            parsed.account_id,
            parsed.name,
            parsed.number,
            parsed.bank_code,
            parsed.currency,
            parsed.budget_account,
        )
    elif parsed.command == "store-token":
        return cmd_store_token(ctx, parsed.account_id, parsed.token)
    elif parsed.command == "import":
        return cmd_import(ctx, parsed.account_id, parsed.date_from, parsed.date_to, parsed.days)
    elif parsed.command == "categorize":
        return cmd_categorize(ctx, parsed.account)
    elif parsed.command == "submit":
        return cmd_submit(ctx, parsed.account, parsed.ids)
    elif parsed.command == "pipeline":
        return cmd_pipeline(ctx, parsed.account_id, parsed.days, parsed.no_submit)
    elif parsed.command == "status":
        return cmd_status(ctx)
    elif parsed.command == "rules":
        return cmd_rules(ctx, parsed)
    elif parsed.command == "override":
        return cmd_override(ctx, parsed.transaction_id, parsed.payee, parsed.category, parsed.memo)
    elif parsed.command == "retry":
        return cmd_retry(ctx, parsed.transaction_id)
    elif parsed.command == "categories":
        return cmd_categories(ctx, parsed.categories_command)
    else:
        parser.print_help()
        return 1


def main(args: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_cli()
    parsed = parser.parse_args(args)

    setup_logging(parsed.verbose)

    if not parsed.command:
        parser.print_help()
        return 1

    if parsed.command == "init-config":
        return cmd_init_config(parsed.config)

    # Load config
    try:
        config = load_config(parsed.config)
    except Exception as e:
        print(f"❌ Failed to load config: {e}")
        return 1

    errors = config.validate()
    if errors:
        for error in errors:
            print(f"❌ {error}")
        return 1

    ctx = build_context(config)
    try:
        return dispatch(ctx, parsed, parser)
    finally:
        ctx.close()


if __name__ == "__main__":
    sys.exit(main())
