"""
Main orchestrator for Query Group Sync.

This module drives a whole run: load configuration, connect to the directory,
enumerate the groups that carry a membership query and reconcile each of them
without letting one group's failure stop the others.
"""

import sys
import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Dict, Any, Callable, List, Optional

from query_group_sync.config import load_config, build_settings, ConfigurationError, SyncSettings, MIN_SLOT, MAX_SLOT
from query_group_sync.directory import DirectoryClient, DirectoryConnectionError, DirectoryError
from query_group_sync.logging_setup import setup_logging, audit_logger
from query_group_sync.models import ACTION_ADD, ChangeRecord, Group, GroupResult, User
from query_group_sync.notifications import (
    format_runtime,
    send_failure_notification,
    send_group_errors_notification,
    send_success_summary,
)
from query_group_sync.reconcile import reconcile_group

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_GROUP_FAILURES = 1
EXIT_CONFIGURATION_ERROR = 2
EXIT_DIRECTORY_ERROR = 3
EXIT_UNEXPECTED_ERROR = 4


def write_record(record: ChangeRecord):
    """Write one pass-through record as a JSON line on stdout."""
    print(json.dumps(record.to_dict()), flush=True)


def ask_operator(question: str) -> str:
    """Ask on stderr and read the answer from stdin; stdout only carries pass-through records."""
    sys.stderr.write(question)
    sys.stderr.flush()
    answer = sys.stdin.readline()
    if not answer:
        raise EOFError
    return answer


class SyncOrchestrator:
    """
    Main orchestrator for query-driven group membership.

    Coordinates the run across all eligible groups and handles errors per group.
    """

    def __init__(self, config_path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None,
                 client_factory: Callable[..., Any] = DirectoryClient,
                 output: Callable[[ChangeRecord], None] = write_record,
                 prompt: Callable[[str], str] = ask_operator):
        """
        Initialize sync orchestrator.

        Args:
            config_path: Path to configuration file
            overrides: Dotted-key configuration overrides (command-line values)
            client_factory: Builds the directory client from the ldap, schema and error_handling sections
            output: Receives pass-through change records
            prompt: Asks the operator a question in confirmation mode
        """
        self.config = None
        self.config_path = config_path
        self.overrides = overrides or {}
        self.client_factory = client_factory
        self.output = output
        self.prompt = prompt

        self.directory = None
        self.settings: Optional[SyncSettings] = None
        self.known_attributes: List[str] = []
        self.results: List[GroupResult] = []
        self._output_lock = threading.Lock()

        self.sync_stats = {
            'groups_processed': 0,
            'groups_failed': 0,
            'total_users_added': 0,
            'total_users_removed': 0,
            'total_failed_changes': 0,
            'dry_run': False,
            'start_time': None,
            'end_time': None,
            'runtime_seconds': 0,
            'group_details': {}
        }

    def run(self) -> int:
        """
        Run the complete synchronization process.

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        try:
            self.sync_stats['start_time'] = datetime.now()

            self._load_configuration()
            self._setup_logging()

            mode = " (dry run)" if self.config['sync'].get('dry_run') else ""
            logger.info(f"Starting Query Group Sync{mode}")

            self._connect_directory()

            groups = self.enumerate_groups()
            logger.info(f"Found {len(groups)} group(s) to reconcile")
            self.results = self.sync_groups(groups)

            self.sync_stats['end_time'] = datetime.now()
            self.sync_stats['runtime_seconds'] = (
                self.sync_stats['end_time'] - self.sync_stats['start_time']
            ).total_seconds()

            self._log_sync_summary()

            if self.sync_stats['groups_failed'] > 0:
                self._send_group_errors_notification()
                logger.warning(f"Sync completed with {self.sync_stats['groups_failed']} group failures")
                return EXIT_GROUP_FAILURES

            self._send_success_notification()
            logger.info("Sync completed successfully")
            return EXIT_OK

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIGURATION_ERROR
        except DirectoryConnectionError as e:
            logger.error(f"Directory connection error: {e}")
            self._send_failure_notification("Directory Connection Failed", str(e), {
                'Component': 'Directory Connection',
                'Retry Attempts': self.config.get('error_handling', {}).get('max_retries', 3),
                'Impact': 'Sync aborted - no groups processed'
            })
            return EXIT_DIRECTORY_ERROR
        except DirectoryError as e:
            logger.error(f"Directory error: {e}")
            self._send_failure_notification("Directory Error", str(e))
            return EXIT_DIRECTORY_ERROR
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            self._send_failure_notification("Sync Failed", f"Unexpected error: {e}")
            return EXIT_UNEXPECTED_ERROR
        finally:
            self._cleanup()

    def _load_configuration(self):
        """Load and validate configuration."""
        try:
            self.config = load_config(self.config_path, self.overrides)
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")
        self.sync_stats['dry_run'] = bool(self.config['sync'].get('dry_run'))
        audit_logger.log_configuration_access(self.config_path or 'config.yaml')

    def _setup_logging(self):
        """Configure logging based on configuration."""
        setup_logging(self.config.get('logging', {}))

    def _connect_directory(self):
        """Connect to the directory and freeze the run settings."""
        self.directory = self.client_factory(
            self.config['ldap'],
            self.config.get('schema', {}),
            self.config.get('error_handling', {})
        )
        try:
            self.directory.connect()
        except DirectoryConnectionError:
            self.directory = None
            raise

        settings = build_settings(self.config)
        if not settings.user_search_base or not settings.group_search_base:
            settings = settings.with_search_bases(self.directory.get_domain_base())
        self.settings = settings
        logger.info(f"User search base: {settings.user_search_base}; group search base: {settings.group_search_base}")

        if settings.filter_slot is not None:
            self.known_attributes = self.directory.get_user_attribute_names()
            logger.debug(f"Sampled {len(self.known_attributes)} user attribute names for secondary filters")

    def enumerate_groups(self) -> List[Group]:
        """
        Find the groups to reconcile, sorted by name.

        Returns:
            Groups carrying a primary query, narrowed to one group when a name is configured
        """
        settings = self.settings
        if settings.group_name:
            group = self.directory.get_group(
                settings.group_name, settings.group_search_base,
                settings.group_attributes, settings.group_filter
            )
            if group is None:
                logger.warning(f"Group {settings.group_name} not found in {settings.group_search_base}")
                return []
            if not self._has_query(group):
                logger.warning(f"Group {group.name} has no query in {settings.query_attribute}; nothing to do")
                return []
            return [group]

        search_filter = f"(&{settings.group_filter}({settings.query_attribute}=*))"
        groups = []
        for group in self.directory.search_groups(settings.group_search_base, search_filter,
                                                  settings.group_attributes):
            if self._has_query(group):
                groups.append(group)
            else:
                logger.debug(f"Skipping group {group.name}: blank query in {settings.query_attribute}")
        return sorted(groups, key=lambda group: group.name.casefold())

    def _has_query(self, group: Group) -> bool:
        return bool((group.get_value(self.settings.query_attribute) or '').strip())

    def sync_groups(self, groups: List[Group]) -> List[GroupResult]:
        """
        Reconcile every group, collecting one result per group in input order.

        Groups run on a worker pool when more than one worker is configured;
        confirmation mode always runs sequentially.
        """
        workers = self.settings.workers
        if workers > 1 and self.settings.confirm:
            logger.warning("Confirmation mode prompts per change; processing groups sequentially")
            workers = 1

        if workers > 1 and len(groups) > 1:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='group-sync') as pool:
                results = list(pool.map(self.sync_group, groups))
        else:
            results = [self.sync_group(group) for group in groups]

        for result in results:
            self._record_result(result)
        return results

    def sync_group(self, group: Group) -> GroupResult:
        """Reconcile a single group; failures are returned, never raised."""
        return reconcile_group(
            self.directory, group, self.settings, self.known_attributes,
            confirm=self._confirm if self.settings.confirm else None,
            emit=self._emit if self.settings.pass_through else None
        )

    def _confirm(self, action: str, group: Group, user: User) -> bool:
        direction = 'to' if action == ACTION_ADD else 'from'
        try:
            answer = self.prompt(f"{action} {user.account_name} {direction} {group.name}? [y/N] ")
        except EOFError:
            return False
        return answer.strip().lower() in ('y', 'yes')

    def _emit(self, record: ChangeRecord):
        with self._output_lock:
            self.output(record)

    def _record_result(self, result: GroupResult):
        stats = self.sync_stats
        if result.succeeded:
            stats['groups_processed'] += 1
        else:
            stats['groups_failed'] += 1
        stats['total_users_added'] += result.added
        stats['total_users_removed'] += result.removed
        stats['total_failed_changes'] += result.failed_mutations
        stats['group_details'][result.group] = result.as_dict()

    def _send_failure_notification(self, title: str, error_message: str,
                                   additional_info: Optional[Dict[str, Any]] = None):
        """Send email notification for failures."""
        if not self.config:
            return
        try:
            send_failure_notification(title, error_message, self.config.get('notifications', {}), additional_info)
        except Exception as e:
            logger.error(f"Failed to send failure notification: {e}")

    def _send_group_errors_notification(self):
        """Send email notification listing failed groups."""
        failed = [result.as_dict() for result in self.results if not result.succeeded]
        try:
            send_group_errors_notification(failed, self.config.get('notifications', {}))
        except Exception as e:
            logger.error(f"Failed to send group error notification: {e}")

    def _send_success_notification(self):
        """Send email notification for successful sync."""
        try:
            send_success_summary(self.sync_stats, self.config.get('notifications', {}))
        except Exception as e:
            logger.error(f"Failed to send success notification: {e}")

    def _log_sync_summary(self):
        """Log final synchronization statistics."""
        stats = self.sync_stats

        logger.info("=== Sync Summary ===")
        if stats['dry_run']:
            logger.info("Dry run: no changes were written")
        logger.info(f"Total runtime: {format_runtime(stats['runtime_seconds'])}")
        logger.info(f"Groups processed: {stats['groups_processed']}")
        logger.info(f"Groups failed: {stats['groups_failed']}")
        logger.info(f"Total users added: {stats['total_users_added']}")
        logger.info(f"Total users removed: {stats['total_users_removed']}")
        logger.info(f"Failed changes: {stats['total_failed_changes']}")

        for group_name, details in stats.get('group_details', {}).items():
            logger.info(f"--- {group_name}: {details['status']} ---")
            logger.info(f"  Runtime: {details['elapsed_seconds']:.2f}s")
            logger.info(f"  Added: {details['added']}/{details['to_add']}, "
                        f"removed: {details['removed']}/{details['to_remove']}")
            if details['error']:
                logger.info(f"  Error during {details['stage']}: {details['error']}")

    def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of the sync system.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        try:
            self._load_configuration()
            health_status['checks']['configuration'] = {
                'status': 'pass',
                'message': 'Configuration loaded successfully'
            }
        except ConfigurationError as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'

        if not self.config:
            return health_status

        client = self.client_factory(
            self.config['ldap'],
            self.config.get('schema', {}),
            self.config.get('error_handling', {})
        )
        try:
            client.connect(max_retries=1, retry_wait=1)
            health_status['checks']['directory'] = {
                'status': 'pass',
                'message': 'Directory connection successful'
            }
        except DirectoryError as e:
            health_status['checks']['directory'] = {
                'status': 'fail',
                'message': f'Directory connection failed: {e}'
            }
            health_status['status'] = 'unhealthy'
        finally:
            client.disconnect()

        notifications_config = self.config.get('notifications', {})
        if notifications_config.get('enable_email', False):
            required_fields = ['smtp_server', 'email_from', 'email_to']
            missing_fields = [f for f in required_fields if not notifications_config.get(f)]
            if missing_fields:
                health_status['checks']['notifications'] = {
                    'status': 'fail',
                    'message': f'Missing notification config: {missing_fields}'
                }
                health_status['status'] = 'unhealthy'
            else:
                health_status['checks']['notifications'] = {
                    'status': 'pass',
                    'message': 'Email notification configuration valid'
                }
        else:
            health_status['checks']['notifications'] = {
                'status': 'skip',
                'message': 'Email notifications disabled'
            }

        return health_status

    def _cleanup(self):
        """Clean up resources."""
        if self.directory:
            self.directory.disconnect()


def build_parser():
    import argparse

    slot_range = range(MIN_SLOT, MAX_SLOT + 1)
    slot_help = f"{MIN_SLOT}-{MAX_SLOT}"

    parser = argparse.ArgumentParser(
        description='Reconcile directory group membership with the query stored on each group'
    )
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--query-slot', type=int, choices=slot_range, metavar=slot_help,
                        help='Attribute slot holding the membership query')
    parser.add_argument('--filter-slot', type=int, choices=slot_range, metavar=slot_help,
                        help='Attribute slot holding the secondary filter expression')
    parser.add_argument('--scope-slot', type=int, choices=slot_range, metavar=slot_help,
                        help='Attribute slot holding a per-group user search base')
    parser.add_argument('--group-search-base', help='Subtree searched for groups')
    parser.add_argument('--group', help='Only reconcile the group with this name')
    parser.add_argument('--user-search-base', help='Default subtree searched for users')
    parser.add_argument('--server', help='Directory server URL, overrides ldap.server_url')
    parser.add_argument('--dry-run', action='store_true', help='Log intended changes without writing them')
    parser.add_argument('--pass-through', action='store_true',
                        help='Write one JSON record per applied or simulated change to stdout')
    parser.add_argument('--confirm', action='store_true', help='Ask before every change')
    parser.add_argument('--workers', type=int, help='Number of groups processed in parallel')
    parser.add_argument('--health-check', action='store_true',
                        help='Perform health check instead of sync')
    return parser


def build_overrides(args) -> Dict[str, Any]:
    """Map parsed command-line arguments onto dotted configuration keys."""
    return {
        'sync.query_slot': args.query_slot,
        'sync.filter_slot': args.filter_slot,
        'sync.scope_slot': args.scope_slot,
        'sync.group_name': args.group,
        'sync.workers': args.workers,
        'sync.dry_run': True if args.dry_run else None,
        'sync.pass_through': True if args.pass_through else None,
        'sync.confirm': True if args.confirm else None,
        'ldap.group_search_base': args.group_search_base,
        'ldap.user_search_base': args.user_search_base,
        'ldap.server_url': args.server,
    }


def main(argv: Optional[List[str]] = None):
    """Main entry point for the application."""
    args = build_parser().parse_args(argv)

    orchestrator = SyncOrchestrator(config_path=args.config, overrides=build_overrides(args))

    if args.health_check:
        health_status = orchestrator.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    sys.exit(orchestrator.run())


if __name__ == "__main__":
    main()
