"""
Health Check

Performs connectivity checks for the judge clients used by the loop.
"""

from typing import Callable

from prompt_loop_core.domain.value_objects import HealthCheckResult, JudgeRequest
from prompt_loop_core.infrastructure.judge_clients.base import JudgeClient
from prompt_loop_core.loop_config import JudgeSettings


HEALTH_CHECK_PROMPT = "Reply with only 'OK' if you can read this message."


def health_check_judge(client: JudgeClient) -> HealthCheckResult:
    """
    Execute a health check for a single judge client.

    Args:
        client: The judge client to ping

    Returns:
        HealthCheckResult: Health check result
    """
    model_name = getattr(client, "model_name", type(client).__name__)
    request = JudgeRequest(messages=[{"role": "user", "content": HEALTH_CHECK_PROMPT}])
    try:
        response = client.complete(request)
    except Exception as e:
        return HealthCheckResult(
            model_name=model_name,
            success=False,
            latency_ms=None,
            error=str(e)
        )
    if not response.text:
        return HealthCheckResult(
            model_name=model_name,
            success=False,
            latency_ms=response.latency_ms,
            error=f"Judge ({model_name}) returned an empty response"
        )
    return HealthCheckResult(
        model_name=model_name,
        success=True,
        latency_ms=response.latency_ms,
        error=None
    )


def run_health_check(
    roles: dict[str, JudgeSettings],
    create_client_fn: Callable[[JudgeSettings], JudgeClient] | None = None,
) -> tuple[bool, list[HealthCheckResult]]:
    """
    Execute health checks for every configured judge role.

    Uses prompt_loop_core.infrastructure.judge_clients.create_judge_client
    if create_client_fn is not specified.

    Args:
        roles: Judge settings keyed by role name (e.g. "judge", "optimizer")
        create_client_fn: Function to create a judge client (optional)

    Returns:
        tuple: (True when every judge answered, list of all check results)
    """
    if create_client_fn is None:
        from prompt_loop_core.infrastructure.judge_clients.factory import create_judge_client
        create_client_fn = create_judge_client

    print("=== Judge Health Check ===\n")
    results = []
    for role, settings in roles.items():
        print(f"  {role} ({settings.provider}/{settings.model})... ", end="", flush=True)
        try:
            client = create_client_fn(settings)
        except Exception as e:
            result = HealthCheckResult(model_name=settings.model, success=False, latency_ms=None, error=str(e))
        else:
            result = health_check_judge(client)
        results.append(result)

        if result.success:
            print(f"OK ({result.latency_ms}ms)")
        else:
            # Display only the first 100 characters of the error message
            error_short = result.error[:100] if result.error else "Unknown error"
            print("FAILED")
            print(f"    Error: {error_short}")

    print()
    return all(r.success for r in results), results
