"""End-to-end runs against a real Docker daemon and the language images.

Skipped unless ``docker info`` succeeds; each test also skips when its image
has not been built (``abx prewarm`` builds them from the configured ``docker_dir``).
"""

import pytest

from arraybox_sandbox.config import SandboxConfig
from arraybox_sandbox.image_provisioner import ImageProvisioner
from arraybox_sandbox.models import ExecutionTier, Language
from arraybox_sandbox.sandbox import Sandbox
from arraybox_sandbox.system_probes import is_runtime_available
from tests.conftest import skip_unless_docker

pytestmark = [skip_unless_docker, pytest.mark.slow]


async def require_image(config: SandboxConfig, language: Language) -> None:
    if not await ImageProvisioner(config).image_exists(language):
        pytest.skip(f"Image {config.image_for(language)} not built")


@pytest.fixture
def docker_config() -> SandboxConfig:
    return SandboxConfig(prewarm_on_startup=False, timeout_ms=10_000)


async def test_runtime_probe(docker_config: SandboxConfig) -> None:
    assert await is_runtime_available(docker_config) is True


async def test_j_warm_then_reset(docker_config: SandboxConfig) -> None:
    await require_image(docker_config, Language.J)
    async with Sandbox(docker_config) as sandbox:
        first = await sandbox.execute("j", "x =: 3\nx * 2")
        second = await sandbox.execute("j", "x")

    assert first.success
    assert first.output == "6"
    assert first.tier is ExecutionTier.WARM
    assert not second.success
    assert "value error" in second.output


async def test_j_cold(docker_config: SandboxConfig) -> None:
    await require_image(docker_config, Language.J)
    config = docker_config.model_copy(update={"use_warm_sessions": False})
    async with Sandbox(config) as sandbox:
        result = await sandbox.execute("j", "+/ i. 10")

    assert result.success
    assert result.output == "45"
    assert result.tier is ExecutionTier.COLD


async def test_j_warm_timeout_recycles(docker_config: SandboxConfig) -> None:
    await require_image(docker_config, Language.J)
    async with Sandbox(docker_config) as sandbox:
        result = await sandbox.execute("j", "6!:3 (5)", timeout_ms=1_000)
        follow_up = await sandbox.execute("j", "1+1")

    assert result.timed_out is True
    assert follow_up.output == "2"


async def test_kap_warm(docker_config: SandboxConfig) -> None:
    await require_image(docker_config, Language.KAP)
    async with Sandbox(docker_config) as sandbox:
        result = await sandbox.execute("kap", "+/ 1 2 3")

    assert result.success
    assert result.output == "6"

