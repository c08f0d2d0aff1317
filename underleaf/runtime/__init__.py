from underleaf.runtime.base import ExecStream, Runtime


def create_runtime(backend="docker"):
    if backend == "docker":
        from underleaf.runtime.docker import DockerRuntime
        return DockerRuntime()
    raise ValueError(f"Unknown runtime backend: {backend}")


__all__ = ["ExecStream", "Runtime", "create_runtime"]
