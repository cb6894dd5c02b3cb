from datetime import datetime
from typing import Optional, Protocol, Union


CredentialValue = Union[str, datetime, bytes]


class CredentialStoreError(RuntimeError):
    pass


class CredentialStore(Protocol):
    namespace: str

    def save(self, key: str, value: CredentialValue) -> None:
        ...

    def read(self, key: str) -> Optional[CredentialValue]:
        ...

    def delete(self, key: str) -> None:
        ...
