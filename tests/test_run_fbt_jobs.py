import asyncio
import importlib.util
import json
from pathlib import Path

from fbt_testing import build_service, fresh_database, seed_catalog, seed_orders

SCRIPT = Path(__file__).resolve().parents[1] / "scripts" / "run_fbt_jobs.py"
script_spec = importlib.util.spec_from_file_location("run_fbt_jobs", SCRIPT)
run_fbt_jobs = importlib.util.module_from_spec(script_spec)
script_spec.loader.exec_module(run_fbt_jobs)


def _run(service, *argv):
    args = run_fbt_jobs.build_parser().parse_args(list(argv))
    return run_fbt_jobs.run(args, service)


def test_backfill_command_starts_and_finishes(capsys):
    async def scenario():
        async with fresh_database() as factory:
            service = build_service(factory)
            await seed_orders(service, [[1, 2], [2, 3]])

            exit_code = await _run(service, "backfill", "--time-budget", "30")

            assert exit_code == run_fbt_jobs.EXIT_COMPLETED
            assert await service.relationships.get_count(2, 3) == 1

    asyncio.run(scenario())
    output = json.loads(capsys.readouterr().out)
    assert output["completed"] is True
    assert output["processed"] == 2


def test_cleanup_and_status_commands(capsys):
    async def scenario():
        async with fresh_database() as factory:
            service = build_service(factory)
            await seed_catalog(service, [1, 2, 3])
            for order_id in await seed_orders(service, [[1, 2], [1, 3], [1, 3]]):
                await service.collector.process(order_id)

            assert await _run(service, "cleanup", "--min-pair-count", "2") == 0
            assert await _run(service, "status") == 0

    asyncio.run(scenario())
    cleanup_line, status_blob = capsys.readouterr().out.split("\n", 1)
    assert json.loads(cleanup_line)["low_count_deleted"] == 2
    assert json.loads(status_blob)["backfill"]["state"] == "not_started"
