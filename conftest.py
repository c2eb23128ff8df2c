import pytest

DOCKER_SUITES = ("integration", "e2e")


def _docker_available() -> bool:
    try:
        import docker

        docker.from_env().ping()
        return True
    except Exception:
        return False


def pytest_collection_modifyitems(config, items):
    needs_docker = [item for item in items if any(s in item.path.parts for s in DOCKER_SUITES)]
    if not needs_docker or _docker_available():
        return
    skip = pytest.mark.skip(reason="Docker is not available for testcontainers")
    for item in needs_docker:
        item.add_marker(skip)
