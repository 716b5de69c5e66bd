from abc import ABC, abstractmethod
from typing import Any, Dict, List


class ObjectStore(ABC):
    """
    Abstract metadata persistence interface.

    An ObjectStore keeps small JSON-like records (dicts) under string keys.
    The EBS driver uses it for the Device record (`ebs.cfg`) and one record
    per Volume (`ebs_volume_<name>.json`).

    Implementations must make save() atomic: a reader never observes a
    half-written record, so a crash leaves either the old or the new state.
    """

    @abstractmethod
    def exists(self, key: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def load(self, key: str) -> Dict[str, Any]:
        """
        Load a record.

        Raises:
            RecordNotFoundError: if no record is stored under `key`.
        """
        raise NotImplementedError

    @abstractmethod
    def save(self, key: str, record: Dict[str, Any]) -> None:
        """Create or overwrite the record stored under `key`."""
        raise NotImplementedError

    @abstractmethod
    def delete(self, key: str) -> None:
        """Delete a record. Deleting a missing record is not an error."""
        raise NotImplementedError

    @abstractmethod
    def list_ids(self, prefix: str, suffix: str) -> List[str]:
        """
        Enumerate stored keys of the form <prefix><id><suffix>.

        Returns:
            The sorted list of <id> parts.
        """
        raise NotImplementedError
