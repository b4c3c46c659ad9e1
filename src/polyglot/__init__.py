from .access import (
    AccessReconciler,
    expected_library_access,
)
from .classifier import (
    Classification,
    FileClassifier,
)
from .config import (
    ConfigurationStore,
    PluginConfiguration,
    load_config,
)
from .errors import (
    AlternativeNotFoundError,
    CrossDeviceError,
    LibraryNotFoundError,
    LinkError,
    MirrorNotFoundError,
    PolyglotError,
    SyncCancelled,
    UserNotFoundError,
)
from .events import (
    EventDispatcher,
    LibraryRemoved,
    UserCreated,
    UserDeleted,
    UserUpdated,
)
from .ldap import (
    UNAVAILABLE,
    LdapGroupResolver,
)
from .links import (
    LocalFileSystem,
)
from .mirror import (
    DeleteResult,
    MirrorSyncEngine,
    SyncAllResult,
    SyncAllStatus,
    SyncResult,
    mirror_tree,
)
from .models import (
    HostUser,
    LanguageAlternative,
    LdapGroupMapping,
    LibraryInfo,
    LibraryMirror,
    SyncStatus,
    UserInfo,
    UserLanguageConfig,
)
from .orphans import (
    OrphanCleanupResult,
    OrphanDetector,
)
from .sync import (
    sync,
)
from .tasks import (
    run_mirror_sync,
    run_post_scan_sync,
    run_user_reconciliation,
)
from .users import (
    UserLanguageService,
)
