import importlib
import typing
from typing import Any, Callable, Dict, Iterator, Optional, Type, Union, cast

if typing.TYPE_CHECKING:
    from bacass.scheduler import Job, Scheduler


class ExecutorError(Exception):
    pass


class TaskExecutionError(Exception):
    """
    A task instance ran but did not complete successfully.
    """

    def __init__(
        self,
        node: str,
        key: str,
        message: str,
        returncode: Optional[int] = None,
        stderr: str = "",
    ):
        self.node = node
        self.key = key
        self.message = message
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f"{node} [{key}]: {message}")

    def __reduce__(self):
        return (
            type(self),
            (self.node, self.key, self.message, self.returncode, self.stderr),
        )


class TaskCancelledError(TaskExecutionError):
    """
    A task instance was stopped because the run was cancelled.
    """

    def __init__(self, node: str, key: str, message: str = "cancelled", **kwargs: Any):
        super().__init__(node, key, message, **kwargs)


class Executor:
    """
    Runs task instances on behalf of the Scheduler.

    Executor types are made available to config files with `register_executor`.
    """

    def __init__(
        self,
        name: str,
        scheduler: Optional["Scheduler"] = None,
        config=None,
    ):
        self.name = name
        self._scheduler = scheduler

    def set_scheduler(self, scheduler: "Scheduler") -> None:
        self._scheduler = scheduler

    def log(self, *messages: Any, **kwargs) -> None:
        """
        Display log message through Scheduler.
        """
        assert self._scheduler
        self._scheduler.log(f"Executor[{self.name}]:", *messages, **kwargs)

    def submit(self, job: "Job") -> None:
        """
        Run a task instance whose body is a python function.

        The outcome is reported back with `Scheduler.done_job` or `Scheduler.reject_job`.
        """
        assert self._scheduler
        self._scheduler.reject_job(
            job,
            ExecutorError("Executor {} does not support submitting tasks.".format(type(self))),
        )

    def submit_script(self, job: "Job") -> None:
        """
        Run a task instance whose body renders a shell command.
        """
        assert self._scheduler
        self._scheduler.reject_job(
            job,
            ExecutorError(
                "Executor {} does not support submitting script tasks.".format(type(self))
            ),
        )

    def cancel_job(self, job: "Job") -> None:
        """
        Ask the executor to stop an in-flight job.

        The executor still reports the job back through `reject_job`.
        """
        pass

    def set_limits(self, max_cpus: int, max_memory: float) -> None:
        """
        Set the total cpus and memory (GB) that in-flight jobs may reserve.
        """
        pass

    def start(self) -> None:
        pass

    def stop(self) -> None:
        pass


class _ExecutorProvider:
    """
    Executor class that is imported on first use.
    """

    _executor_class: Union[Type[Executor], str]

    def __init__(self, executor_class: Union[Type[Executor], str]):
        self._executor_class = executor_class

    @property
    def executor_class(self) -> Type[Executor]:
        if isinstance(self._executor_class, str):
            module_name, class_name = self._executor_class.rsplit(".", 1)
            module = importlib.import_module(module_name)
            executor_class = getattr(module, class_name)
            self._executor_class = executor_class
        return cast(Type[Executor], self._executor_class)

    def __call__(self, *args, **kwargs) -> Executor:
        return self.executor_class(*args, **kwargs)


# Singleton executor registry.
_executor_providers: Dict[str, _ExecutorProvider] = {}


def get_executor_class(executor_name: str, required: bool = True) -> Optional[Type[Executor]]:
    """
    Get an Executor by name from the executor registry.

    Parameters
    ----------
    executor_name : str
        Name of executor class to retrieve.
    required : bool
        If True, raises error if executor is not registered.
        If False, None is returned for unknown executor name.
    """
    executor_provider = _executor_providers.get(executor_name)
    if not executor_provider:
        if required:
            raise ExecutorError("Unknown executor {}".format(executor_name))
        return None

    return executor_provider.executor_class


def _register_executor(
    executor_name: str, executor_class: Union[Type[Executor], str]
) -> _ExecutorProvider:
    provider = _ExecutorProvider(executor_class)
    _executor_providers[executor_name] = provider
    return provider


def register_executor(executor_name: str, executor_class_name: Optional[str] = None) -> Callable:
    """
    Register an Executor, either by decorating a class or passing a fully-specified class name.
    The executor type will be available to `[executors.<name>]` config sections under the
    provided name.

    Usage:
    >>> @register_executor("my_executor")
    ... class MyExecutor(Executor):
    ...     ...
    or
    >>> register_executor("my_executor", "my_module.MyExecutor")
    """
    if executor_class_name:
        return _register_executor(executor_name, executor_class_name)

    def deco(executor_class: Type[Executor]):
        _register_executor(executor_name, executor_class)
        return executor_class

    return deco


def get_executors_from_config(executors_config: dict) -> Iterator[Executor]:
    """
    Instantiate executors defined in an executors config section.
    """
    for executor_name, executor_config in executors_config.items():
        if "type" not in executor_config:
            raise ExecutorError(f"Executor {executor_name} has no type.")
        executor_class = cast(Type[Executor], get_executor_class(executor_config["type"]))
        yield executor_class(executor_name, config=executor_config)
