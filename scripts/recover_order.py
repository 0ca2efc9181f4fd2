#!/usr/bin/env python3
"""
Order Recovery

Materializes the order for a payment that was captured but never turned into
an order (browser closed, webhook lost). The payment is re-verified with its
processor first; running the command again for the same payment prints the
existing order instead of creating another one.

Usage:
    python recover_order.py --staging-id stripe_1718000000000_a1b2c3d4e5 --payment-reference pi_3Pabc
    python recover_order.py --staging-id paypal_1718000000000_a1b2c3d4e5 --payment-reference 5O190127TN364715T --rail paypal
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from api.dependencies import get_points_outbox, get_recovery_service
from domain.errors import PaymentFlowError
from domain.payment import PaymentRail


def main() -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        description="Recover the order for a captured payment",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Card payment (PaymentIntent id)
  python recover_order.py --staging-id stripe_1718000000000_a1b2c3d4e5 --payment-reference pi_3Pabc

  # Klarna / Satispay (Checkout Session id or PaymentIntent id)
  python recover_order.py --staging-id klarna_1718000000000_a1b2c3d4e5 --payment-reference cs_test_a1 --rail redirect

  # PayPal
  python recover_order.py --staging-id paypal_1718000000000_a1b2c3d4e5 --payment-reference 5O190127TN364715T --rail paypal
        """
    )
    parser.add_argument("--staging-id", required=True, help="Staged draft id (order_data_id)")
    parser.add_argument("--payment-reference", required=True, help="PaymentIntent, Checkout Session or PayPal order id")
    parser.add_argument(
        "--rail",
        choices=[rail.value for rail in PaymentRail],
        default=PaymentRail.CARD.value,
        help="Payment rail (default: card)",
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        outcome = get_recovery_service().recover(
            args.staging_id,
            args.payment_reference,
            PaymentRail(args.rail),
        )
        report = get_points_outbox().drain()

        print()
        print("=" * 60)
        print("RECOVERY SUMMARY")
        print("=" * 60)
        print(f"Payment reference: {outcome.payment_reference}")
        print(f"Order id:          {outcome.order_id}")
        print(f"Already existed:   {'yes' if outcome.already_exists else 'no'}")
        print(f"Resolved by:       {outcome.resolution.value}")
        print(f"Points redeemed:   {report.delivered} (retrying: {report.retried}, failed: {report.dead_lettered})")
        print("=" * 60)
        return 0

    except PaymentFlowError as e:
        print(f"\nRECOVERY FAILED [{e.code}]: {e.message}", file=sys.stderr)
        return 2

    except KeyboardInterrupt:
        print("\n\nRecovery interrupted by user")
        return 130

    except Exception as e:
        print(f"\nERROR: {e}", file=sys.stderr)
        import traceback
        traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
