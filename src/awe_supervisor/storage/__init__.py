from awe_supervisor.storage.artifacts import PauseRequest, TaskPaths, TaskStateStore

__all__ = ['PauseRequest', 'TaskPaths', 'TaskStateStore']
