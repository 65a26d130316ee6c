#!/usr/bin/env python3
"""
System health check script, run from a deployment shell

Usage (from the project root):
    python scripts/health_check.py

Or only some checks:
    python scripts/health_check.py --only money,circuit_breaker

Available checks:
    config, money, validation, circuit_breaker, logging, exceptions, database, readiness
"""
import sys
import asyncio
import argparse
from datetime import datetime
from decimal import Decimal
from pathlib import Path

# Make the project importable
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))


class Colors:
    """Terminal colours"""
    GREEN = "\033[92m"
    RED = "\033[91m"
    YELLOW = "\033[93m"
    BLUE = "\033[94m"
    RESET = "\033[0m"
    BOLD = "\033[1m"


def print_header(title: str) -> None:
    print(f"\n{Colors.BOLD}{Colors.BLUE}{'='*60}")
    print(f" {title}")
    print(f"{'='*60}{Colors.RESET}\n")


def print_result(test_name: str, passed: bool, details: str = "") -> None:
    status = f"{Colors.GREEN}✓ PASS{Colors.RESET}" if passed else f"{Colors.RED}✗ FAIL{Colors.RESET}"
    print(f"  {status} {test_name}")
    if details:
        print(f"         {Colors.YELLOW}{details}{Colors.RESET}")


def print_section(title: str) -> None:
    print(f"\n{Colors.BOLD}▶ {title}{Colors.RESET}")


def _run(coro):
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


class HealthChecker:
    """Runs the checks and keeps the tally"""

    def __init__(self):
        self.results: list[tuple[str, bool, str]] = []
        self.total_passed = 0
        self.total_failed = 0

    def record(self, test_name: str, passed: bool, details: str = "") -> None:
        self.results.append((test_name, passed, details))
        if passed:
            self.total_passed += 1
        else:
            self.total_failed += 1
        print_result(test_name, passed, details)

    # =========================================================================
    # Money
    # =========================================================================
    def test_money(self) -> None:
        print_section("Money arithmetic")

        try:
            from app.domain.services.money import (
                calculate_transfer_fee,
                from_minor_units,
                to_minor_units,
            )
            from app.domain.services.pricing import PricingBreakdown

            self.record("₦5,000.00 -> 500000 kobo", to_minor_units(Decimal("5000")) == 500000)
            self.record("500000 kobo -> ₦5,000.00", from_minor_units(500000) == Decimal("5000.00"))

            fees = [calculate_transfer_fee(v) for v in ("5000", "5000.01", "50000", "50000.01")]
            self.record(
                "Transfer fee tiers",
                fees == [Decimal("10.00"), Decimal("25.00"), Decimal("25.00"), Decimal("50.00")],
                f"Fees: {[str(f) for f in fees]}",
            )

            breakdown = PricingBreakdown.from_delivery_total(Decimal("5000"))
            self.record(
                "Revenue split adds up",
                breakdown.driver_share + breakdown.platform_share == breakdown.delivery_total,
                f"driver={breakdown.driver_share} platform={breakdown.platform_share}",
            )

        except Exception as e:
            self.record("Money module import", False, str(e))

    # =========================================================================
    # Validation
    # =========================================================================
    def test_validation(self) -> None:
        print_section("Input Validation")

        try:
            from app.core.validation import BankDetailsValidator, TextSanitizer
            from app.core.logging import mask_account_number

            valid, _ = BankDetailsValidator.validate_account_number("0123456789")
            self.record("Account number (valid)", valid)

            invalid, _ = BankDetailsValidator.validate_account_number("12345")
            self.record("Account number (invalid rejected)", not invalid)

            masked = mask_account_number("0123456789")
            self.record(
                "Account number masking (privacy)",
                masked == "******6789",
                f"Result: {masked}",
            )

            original = "O'Brien & Sons"
            sanitized = TextSanitizer.sanitize(original)
            self.record(
                "Sanitization preserves apostrophes",
                sanitized == original,
                f"Input: {original}, Output: {sanitized}",
            )

        except Exception as e:
            self.record("Validation module import", False, str(e))

    # =========================================================================
    # Circuit Breaker
    # =========================================================================
    def test_circuit_breaker(self) -> None:
        print_section("Circuit Breaker")

        try:
            from app.core.circuit_breaker import CircuitBreaker, get_gateway_circuit_breaker

            CircuitBreaker.reset_all()

            cb1 = get_gateway_circuit_breaker()
            cb2 = get_gateway_circuit_breaker()
            self.record("Singleton pattern", cb1 is cb2)
            self.record("Initial state is CLOSED", cb1.is_closed)

            import threading
            results = []

            def get_instance():
                results.append(id(CircuitBreaker.get_instance("thread-test")))

            threads = [threading.Thread(target=get_instance) for _ in range(5)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

            unique_ids = len(set(results))
            self.record(
                "Thread-safe singleton creation",
                unique_ids == 1,
                f"5 threads, {unique_ids} unique instance(s)",
            )

            async def _probe():
                async def ok():
                    return True
                return await cb1.execute(ok)

            self.record(
                "Multi event-loop compatibility (Celery)",
                _run(_probe()) and _run(_probe()),
                "Works across different event loops",
            )

            CircuitBreaker.reset_all()

        except Exception as e:
            self.record("Circuit breaker tests", False, str(e))

    # =========================================================================
    # Logging
    # =========================================================================
    def test_logging(self) -> None:
        print_section("Logging Infrastructure")

        try:
            from app.core.logging import get_logger, set_correlation_id, get_correlation_id

            logger = get_logger("health_check")
            self.record("Logger creation", logger is not None)

            cid = set_correlation_id()
            self.record(
                "Correlation ID generation",
                cid == get_correlation_id() and len(cid) > 0,
                f"ID: {cid[:8]}...",
            )

        except Exception as e:
            self.record("Logging tests", False, str(e))

    # =========================================================================
    # Exceptions
    # =========================================================================
    def test_exceptions(self) -> None:
        print_section("Custom Exceptions")

        try:
            from app.core.exceptions import (
                CircuitBreakerOpenError,
                ErrorCode,
                GatewayError,
                InsufficientBalanceError,
            )

            exc = InsufficientBalanceError(owner_id=1, available=Decimal("50"), requested=Decimal("100"))
            self.record(
                "InsufficientBalanceError with details",
                exc.error_code == ErrorCode.INSUFFICIENT_BALANCE
                and exc.details.get("requested") == "100",
            )

            exc = CircuitBreakerOpenError("payment_gateway", retry_after_seconds=30.0)
            self.record(
                "CircuitBreakerOpenError is a GatewayError",
                isinstance(exc, GatewayError) and exc.details.get("retry_after_seconds") == 30.0,
            )

        except Exception as e:
            self.record("Exception tests", False, str(e))

    # =========================================================================
    # Database
    # =========================================================================
    def test_database(self) -> None:
        print_section("Database Connectivity")

        try:
            from sqlalchemy import text
            from app.db.database import get_task_session

            async def check_db():
                async with get_task_session() as session:
                    result = await session.execute(text("SELECT 1"))
                    return result.scalar() == 1

            self.record("Database connection", _run(check_db()))

        except Exception as e:
            self.record("Database connection", False, str(e))

    # =========================================================================
    # Readiness (same checks as /health/ready)
    # =========================================================================
    def test_readiness(self) -> None:
        print_section("Readiness")

        try:
            from app.core.redis_client import close_redis
            from app.domain.services.health_service import check_readiness

            async def _check():
                try:
                    return await check_readiness()
                finally:
                    await close_redis()

            result = _run(_check())
            for name in ("db", "redis", "payment_gateway", "celery"):
                self.record(f"Dependency: {name}", result[name] == "ok", result[name])

        except Exception as e:
            self.record("Readiness check", False, str(e))

    # =========================================================================
    # Configuration
    # =========================================================================
    def test_config(self) -> None:
        print_section("Configuration")

        try:
            from app.core.config import settings

            self.record("Settings loaded", settings is not None, f"App: {settings.APP_NAME}")

            for name in ("DATABASE_URL", "GATEWAY_SECRET_KEY", "JWT_SECRET_KEY", "ADMIN_API_KEY"):
                configured = bool(getattr(settings, name))
                self.record(f"{name} configured", configured, "***" if configured else "MISSING!")

        except Exception as e:
            self.record("Configuration tests", False, str(e))

    # =========================================================================
    # Run everything
    # =========================================================================
    def run_all(self, only: list[str] | None = None) -> bool:
        print_header(f"System health check - {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")

        tests = {
            "config": self.test_config,
            "money": self.test_money,
            "validation": self.test_validation,
            "circuit_breaker": self.test_circuit_breaker,
            "logging": self.test_logging,
            "exceptions": self.test_exceptions,
            "database": self.test_database,
            "readiness": self.test_readiness,
        }

        if only:
            tests = {k: v for k, v in tests.items() if k in only}

        for test_func in tests.values():
            try:
                test_func()
            except Exception as e:
                print(f"{Colors.RED}Error running test: {e}{Colors.RESET}")

        print_header("Summary")
        total = self.total_passed + self.total_failed

        if self.total_failed == 0:
            print(f"{Colors.GREEN}{Colors.BOLD}✓ All checks passed ({total}/{total}){Colors.RESET}")
        else:
            print(f"{Colors.RED}{Colors.BOLD}✗ {self.total_failed} of {total} checks failed{Colors.RESET}")
            print(f"\n{Colors.YELLOW}Failed checks:{Colors.RESET}")
            for name, passed, details in self.results:
                if not passed:
                    print(f"  - {name}: {details}")

        print()
        return self.total_failed == 0


def main():
    parser = argparse.ArgumentParser(description="System health check")
    parser.add_argument(
        "--only",
        type=str,
        help="Comma-separated checks: config,money,validation,circuit_breaker,logging,exceptions,database,readiness",
    )
    args = parser.parse_args()

    only = args.only.split(",") if args.only else None

    checker = HealthChecker()
    success = checker.run_all(only)

    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
