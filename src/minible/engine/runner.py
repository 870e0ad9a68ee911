"""
Minible Playbook Runner

High-level runner that coordinates inventory, playbook compilation,
connections, execution and output.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from minible.connections.base import (
    SUPPORTED_CONNECTIONS,
    ConnectionFactory,
    ConnectionPool,
    create_connection_factory,
)
from minible.engine.config import RunConfig, configure_logging
from minible.engine.display import Display
from minible.engine.errors import ExitCode, MinibleError, UnsupportedFeatureError
from minible.engine.inventory import Host, InventoryManager
from minible.engine.plan import ExecutionPlan, compile_playbook
from minible.engine.playbook import PlaybookParser
from minible.engine.results import PlaybookResult
from minible.engine.scheduler import Scheduler
from minible.modules.base import create_module_runner
from minible.release import __version__


logger = logging.getLogger(__name__)

ERROR_TYPES = {
    ExitCode.PARSE_ERROR: "parse_error",
    ExitCode.UNSUPPORTED_FEATURE: "unsupported_feature",
    ExitCode.HOST_FAILED: "host_failed",
}


class PlaybookRunner:
    """
    High-level playbook runner.

    Coordinates:
    - Inventory loading and host selection (with --limit)
    - Playbook parsing and compilation into execution plans
    - Lazy, pooled connections
    - Execution through the scheduler
    - Recap and JSON output, and the process exit code
    """

    def __init__(
        self,
        inventory_source: str,
        playbook_paths: Sequence[str],
        config: Optional[RunConfig] = None,
        display: Optional[Display] = None,
        connection_factory: Optional[ConnectionFactory] = None,
    ):
        self.inventory_source = inventory_source
        self.playbook_paths = list(playbook_paths)
        self.config = config or RunConfig()
        self.display = display or Display(verbosity=self.config.verbosity, quiet=self.config.json_output)
        self.connection_factory = connection_factory or create_connection_factory(
            connect_timeout=self.config.connect_timeout,
            host_key_checking=self.config.host_key_checking,
        )
        self.inventory: Optional[InventoryManager] = None

    def run(self) -> int:
        """
        Run the playbooks synchronously.

        Returns:
            Exit code (0=success, 2=host failures, 3=parse error,
            4=unsupported feature, 1=other errors, 130=interrupted)
        """
        configure_logging(self.config.log_level)
        try:
            result = asyncio.run(self.run_async())
        except KeyboardInterrupt:
            return self._report_error("interrupted", "Execution interrupted", ExitCode.KEYBOARD_INTERRUPT)
        except MinibleError as e:
            code = ExitCode(e.exit_code)
            return self._report_error(ERROR_TYPES.get(code, "error"), str(e), code)
        except Exception as e:
            logger.exception("Unexpected error during run")
            return self._report_error("error", f"Unexpected error: {e}", ExitCode.GENERIC_ERROR)

        if self.config.json_output:
            print(result.to_json())
        return result.exit_code

    async def run_async(self) -> PlaybookResult:
        """
        Load, compile and execute everything.

        All inventories and playbooks are parsed, and every play's hosts are
        resolved, before the first host is contacted.
        """
        self.inventory = InventoryManager().parse(self.inventory_source)

        compiled: List[Tuple[str, List[Tuple[ExecutionPlan, List[Host]]]]] = []
        for path in self.playbook_paths:
            plays = PlaybookParser(path).parse()
            plans = compile_playbook(plays, self.config.tags, self.config.skip_tags)
            compiled.append((path, [(plan, self._resolve_hosts(plan.hosts)) for plan in plans]))

        pool = ConnectionPool(self.connection_factory)
        scheduler = Scheduler(
            module_runner=create_module_runner(),
            forks=self.config.forks,
            pool=pool,
            display=self.display,
            check_mode=self.config.check_mode,
            extra_vars=self.config.extra_vars,
            magic_vars={"minible_version": __version__},
        )

        result = PlaybookResult(playbook_path=", ".join(self.playbook_paths))
        try:
            for path, plans in compiled:
                self.display.playbook(path)
                scheduler.magic_vars["playbook_dir"] = str(Path(path).resolve().parent)
                for plan, hosts in plans:
                    host_vars = {h.name: self.inventory.get_host_vars(h.name) for h in hosts}
                    play_result = await scheduler.run_play(plan, hosts, host_vars)
                    result.add_play_result(play_result)
        finally:
            await pool.close_all()

        self.display.recap(result.get_final_stats())
        return result

    def _resolve_hosts(self, pattern: str) -> List[Host]:
        """Hosts matching a play's pattern, narrowed by --limit."""
        assert self.inventory is not None
        hosts = self.inventory.get_hosts(pattern)

        if self.config.limit:
            allowed = {h.name for h in self.inventory.get_hosts(self.config.limit)}
            hosts = [h for h in hosts if h.name in allowed]

        for host in hosts:
            conn_type = host.connection_params.connection
            if conn_type not in SUPPORTED_CONNECTIONS:
                raise UnsupportedFeatureError(
                    f"connection type '{conn_type}' (host {host.name})",
                    suggestion=f"Supported connection types: {', '.join(SUPPORTED_CONNECTIONS)}",
                )

        return hosts

    def _report_error(self, error_type: str, message: str, exit_code: ExitCode) -> int:
        logger.debug("Run failed with %s: %s", error_type, message)
        if self.config.json_output:
            print(json.dumps({
                "error": True,
                "error_type": error_type,
                "message": message,
                "exit_code": int(exit_code),
            }, indent=2))
        else:
            self.display.error(message)
        return int(exit_code)
