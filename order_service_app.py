#!/usr/bin/env python3
"""
Order Service - command-line entry point.

Runs order lifecycle operations against an in-memory or SQLite store:

    order_service_app.py demo                       create, pay and fulfill one order
    order_service_app.py --db orders.db create
    order_service_app.py --db orders.db pay 1 conf-123
    order_service_app.py --db orders.db fulfill 1
    order_service_app.py --db orders.db cancel 1
    order_service_app.py --db orders.db show 1
    order_service_app.py --db orders.db list

Exit codes: 0 success, 1 error, 2 event rejected.
"""

import argparse
import logging
import sys
import uuid
from typing import List, Optional

from audit import AuditTrail, LoggingStateChangeListener
from config import ServiceConfig, add_arguments
from fsm import ConfigurationError, TransitionActionError, TransitionResult
from order_service import OrderService, build_order_service
from order_store import OrderRecord, OrderServiceError

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_REJECTED = 2


def format_record(record: OrderRecord) -> str:
    return f"{record.id},{record.creation_date.isoformat()},{record.state}"


def report(result: TransitionResult) -> int:
    if result.accepted:
        print(f"{result.previous_state.name} -> {result.state.name}")
        return EXIT_OK
    print(f"REJECTED,{result.reason.value},{result.state.name}")
    return EXIT_REJECTED


def run_demo(service: OrderService) -> int:
    """Create an order, pay for it and fulfill it, logging the state after each step."""
    order = service.create_order()
    logger.info(f"After calling create_order() -> {service.get_order(order.id).state}")

    result = service.pay_order(order.id, str(uuid.uuid4()))
    logger.info(f"After calling pay_order() -> {result.state.name}")

    result = service.fulfill_order(order.id)
    logger.info(f"After calling fulfill_order() -> {result.state.name}")

    print(format_record(service.get_order(order.id)))
    return EXIT_OK if result.accepted else EXIT_REJECTED


def run_command(service: OrderService, args: argparse.Namespace) -> int:
    if args.command == 'demo':
        return run_demo(service)
    if args.command == 'create':
        print(format_record(service.create_order()))
        return EXIT_OK
    if args.command == 'pay':
        return report(service.pay_order(args.order_id, args.confirmation))
    if args.command == 'fulfill':
        return report(service.fulfill_order(args.order_id))
    if args.command == 'cancel':
        return report(service.cancel_order(args.order_id))
    if args.command == 'show':
        print(format_record(service.get_order(args.order_id)))
        return EXIT_OK
    if args.command == 'list':
        for record in service.list_orders():
            print(format_record(record))
        return EXIT_OK
    raise ValueError(f"Unknown command: {args.command}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Order lifecycle service',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    add_arguments(parser)

    commands = parser.add_subparsers(dest='command', required=True)
    commands.add_parser('demo', help='Create, pay and fulfill a new order')
    commands.add_parser('create', help='Create a new order')

    pay = commands.add_parser('pay', help='Pay for an order')
    pay.add_argument('order_id', type=int)
    pay.add_argument('confirmation', type=str, help='Payment confirmation number')

    for name, text in (('fulfill', 'Fulfill a paid order'),
                       ('cancel', 'Cancel an order'),
                       ('show', 'Print one order')):
        sub = commands.add_parser(name, help=text)
        sub.add_argument('order_id', type=int)

    commands.add_parser('list', help='Print all orders')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        config = ServiceConfig.from_args(args)
    except ConfigurationError as e:
        logger.error(str(e))
        return EXIT_ERROR

    audit = AuditTrail()
    service: Optional[OrderService] = None

    try:
        service = build_order_service(config, listeners=[LoggingStateChangeListener(), audit])
        return run_command(service, args)
    except OrderServiceError as e:
        logger.error(str(e))
        if e.retryable:
            logger.error("The operation can be retried")
        return EXIT_ERROR
    except (ConfigurationError, TransitionActionError) as e:
        logger.error(str(e))
        return EXIT_ERROR
    finally:
        if config.audit_csv:
            audit.to_csv(config.audit_csv)
        if service is not None:
            service.close()


if __name__ == '__main__':
    sys.exit(main())
