from .broker import BrokerTask, InMemoryBroker
from .handlers import HandlerRegistry, JobContext
from .manager import AddJobResult, QueueManager
from .worker import JobWorker

__all__ = ["AddJobResult", "BrokerTask", "HandlerRegistry", "InMemoryBroker", "JobContext", "JobWorker", "QueueManager"]
