"""
Local Converge Example

This example walks a stack through its first deployment against the
in-memory collaborators:
1. Converge before the image exists (compute chain is blocked)
2. Publish the image and converge again
3. Move the release tag and fire the release trigger

Run: python -m examples.01-local-converge.main
"""

import asyncio
import logging
from pathlib import Path

from converge import ConvergenceEngine, ObservedState, ReleaseTrigger
from converge.config import FileStackLoader
from converge.engine import MemoryStateBackend
from converge.outputs import collect_outputs
from converge.providers import (
    InMemoryArtifactRegistry,
    InMemoryProvider,
    InMemorySecretStore,
    ProviderRegistry,
)

STACK_FILE = Path(__file__).parent / "stack.yaml"


async def main() -> None:
    logging.basicConfig(level=logging.INFO)

    artifacts = InMemoryArtifactRegistry()
    secrets = InMemorySecretStore()
    secrets.add("vault", "api/database-url")
    provider = InMemoryProvider(artifacts=artifacts)
    engine = ConvergenceEngine(ProviderRegistry(provider, artifacts=artifacts, secrets=secrets))

    loader = FileStackLoader(STACK_FILE)
    stack = await loader.load()
    resources = await loader.load_resources()
    observed = ObservedState(stack.environment, MemoryStateBackend())

    # =========================================================================
    # First converge: nothing has been pushed yet
    # =========================================================================

    result = await engine.converge(resources, observed)
    print("First converge:", result.table())

    # =========================================================================
    # Push the image and converge again
    # =========================================================================

    artifacts.publish("api", "production", "sha256:1111")
    result = await engine.converge(await loader.load_resources(), observed)
    print("Second converge:", result.table())
    print("Outputs:", collect_outputs(resources, observed))

    # =========================================================================
    # Move the tag and let the release trigger redeploy
    # =========================================================================

    by_name = {r.name: r for r in resources}
    trigger = ReleaseTrigger.for_resource(
        by_name["api"],
        by_name,
        observed=observed,
        provider=provider,
        artifacts=artifacts,
        locks=engine.locks,
    )
    artifacts.publish("api", "production", "sha256:2222")
    release = await trigger.invoke()
    print("Release:", release.to_dict())


if __name__ == "__main__":
    asyncio.run(main())
