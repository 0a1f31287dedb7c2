from caportal.repositories.accounts import InMemoryAccountsRepository, PostgresAccountsRepository
from caportal.repositories.analyses import InMemoryAnalysesRepository, PostgresAnalysesRepository
from caportal.repositories.documents import InMemoryDocumentsRepository, PostgresDocumentsRepository
from caportal.repositories.notes import InMemoryNotesRepository, PostgresNotesRepository
from caportal.repositories.organizations import (
    InMemoryOrganizationsRepository,
    PostgresOrganizationsRepository,
)

__all__ = [
    "InMemoryAccountsRepository",
    "PostgresAccountsRepository",
    "InMemoryAnalysesRepository",
    "PostgresAnalysesRepository",
    "InMemoryDocumentsRepository",
    "PostgresDocumentsRepository",
    "InMemoryNotesRepository",
    "PostgresNotesRepository",
    "InMemoryOrganizationsRepository",
    "PostgresOrganizationsRepository",
]
