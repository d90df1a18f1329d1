"""
Bounded worker pool for independent per-gene-set tasks.
"""

from concurrent.futures import ProcessPoolExecutor, as_completed
from typing import Any, Callable, Dict, Hashable, Mapping, Optional, Tuple
import logging
import platform

from tqdm.auto import tqdm

from .exceptions import DispatchError

logger = logging.getLogger(__name__)

# Configure tqdm to work properly on macOS
is_mac = platform.system() == 'Darwin'
tqdm_kwargs = {
    'position': 0,
    'leave': True,
    'ncols': 100,
    'dynamic_ncols': True,
    'ascii': is_mac,
    'disable': False,
}


def dispatch(
    fn: Callable[[Any], Any],
    tasks: Mapping[Hashable, Any],
    n_workers: int = 1,
    desc: str = "Testing gene sets",
    initializer: Optional[Callable[..., None]] = None,
    initargs: Tuple = ()
) -> Dict[Hashable, Any]:
    """
    Run ``fn`` on every task argument, sequentially or on a process pool.

    ``fn`` and the task arguments must be picklable when ``n_workers > 1``.
    Anything ``fn`` wants to survive as a per-task failure has to be caught
    inside ``fn``; an exception escaping a task aborts the whole batch.

    ``initializer(*initargs)`` runs once per worker process before any task,
    or once in-process when running sequentially. Use it to ship state shared
    by every task instead of pickling that state with each task argument.

    Args:
        fn: Function applied to each task argument
        tasks: Mapping of task key -> argument
        n_workers: Maximum number of worker processes (1 runs in-process)
        desc: Progress bar label
        initializer: Called once per worker before its first task
        initargs: Arguments for ``initializer``

    Returns:
        Mapping of task key -> result, in the iteration order of ``tasks``
    """
    if n_workers < 1:
        raise ValueError("n_workers must be at least 1")

    results: Dict[Hashable, Any] = {}
    total = len(tasks)
    if total == 0:
        return results

    if n_workers == 1:
        logger.debug(f"Running {total} tasks sequentially")
        if initializer is not None:
            initializer(*initargs)
        with tqdm(total=total, desc=desc, unit="task", **tqdm_kwargs) as pbar:
            for key, arg in tasks.items():
                try:
                    results[key] = fn(arg)
                except Exception as e:
                    raise DispatchError(f"Task {key} failed: {e}") from e
                pbar.update(1)
        return results

    logger.info(f"Running {total} tasks on {n_workers} worker processes")
    try:
        with ProcessPoolExecutor(max_workers=n_workers, initializer=initializer, initargs=initargs) as executor:
            futures = {executor.submit(fn, arg): key for key, arg in tasks.items()}
            with tqdm(total=total, desc=desc, unit="task", **tqdm_kwargs) as pbar:
                for future in as_completed(futures):
                    key = futures[future]
                    try:
                        results[key] = future.result()
                    except Exception as e:
                        for pending in futures:
                            pending.cancel()
                        raise DispatchError(f"Task {key} failed: {e}") from e
                    pbar.update(1)
    except DispatchError:
        raise
    except Exception as e:
        raise DispatchError(f"Worker pool failed: {e}") from e

    return {key: results[key] for key in tasks}
