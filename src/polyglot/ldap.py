import logging
import re

from .config import ConfigurationStore
from .interfaces import GroupMembershipProvider

log = logging.getLogger(__name__)

_CN_RE = re.compile(r"^\s*cn\s*=\s*((?:\\.|[^,])+)", re.IGNORECASE)


def extract_cn(dn: str) -> str | None:
    """``cn=Spanish Viewers,ou=groups,dc=example`` -> ``Spanish Viewers``."""
    match = _CN_RE.match(dn or "")
    if not match:
        return None
    return re.sub(r"\\(.)", r"\1", match.group(1)).strip()


class UnavailableGroupProvider:
    """Stands in when no directory service is configured."""

    available = False

    def get_user_groups(self, username: str) -> list[str]:
        return []


UNAVAILABLE = UnavailableGroupProvider()


class LdapGroupResolver:
    """Maps directory group membership onto a language alternative."""

    def __init__(self, store: ConfigurationStore, provider: GroupMembershipProvider = UNAVAILABLE):
        self.store = store
        self.provider = provider

    @property
    def enabled(self) -> bool:
        return self.provider.available and self.store.read(lambda c: c.enable_ldap_integration)

    def get_user_groups(self, username: str) -> list[str]:
        if not self.provider.available:
            return []
        try:
            return list(self.provider.get_user_groups(username))
        except Exception as e:
            log.error("Failed to query groups of user %s: %s", username, e)
            return []

    def determine_language(self, username: str) -> str | None:
        """Return the alternative id of the best matching group mapping.

        Mappings are matched by group DN or group name against the user's
        groups and their CNs, ignoring case. The highest priority wins; among
        equal priorities the first configured mapping does.
        """
        if not self.enabled:
            return None
        mappings = self.store.get_ldap_group_mappings()
        if not mappings:
            return None

        groups = set()
        for group in self.get_user_groups(username):
            groups.add(group.casefold())
            cn = extract_cn(group)
            if cn:
                groups.add(cn.casefold())
        if not groups:
            return None

        best = None
        for mapping in mappings:
            names = {mapping.group_dn.casefold()}
            if mapping.group_name:
                names.add(mapping.group_name.casefold())
            if names.isdisjoint(groups):
                continue
            if best is None or mapping.priority > best.priority:
                best = mapping

        if best is None:
            return None
        log.debug("User %s matched group '%s' with priority %d", username, best.group_dn, best.priority)
        return best.alternative_id
