"""
Entity resolution for providers, materials and accounts.

Extracted text is matched against existing ledger records through a fixed
ladder of increasingly fuzzy checks; the first hit wins. Unmatched entities
are created. A ResolutionCache scoped to one upload or batch short-circuits
repeated lookups.
"""

import logging
import sqlite3
from typing import Iterable, Optional

from ..storage.ledger import new_id
from .exceptions import BlockedProviderError, LedgerError
from .models import (
    MATERIAL_CATEGORY_BY_PROVIDER_TYPE,
    Account,
    ExtractedInvoice,
    ExtractedItem,
    ExtractedProvider,
    Material,
    Provider,
    ProviderType,
)
from .normalize import (
    MIN_SIMILAR_CODE_LENGTH,
    are_material_codes_similar,
    are_provider_names_similar,
    extract_material_code,
    generate_standard_material_code,
    is_generated_code,
    is_valid_material_code,
    normalize_cif,
    normalize_material_code,
    normalize_phone,
    normalize_provider_name,
    placeholder_cif,
    strip_accents,
)

logger = logging.getLogger(__name__)

MAX_CODE_ATTEMPTS = 5
FALLBACK_MATERIAL_CODE = "material"
RENTAL_KEYWORDS = ("alquiler", "alquileres", "rental", "maquinaria")


def _is_placeholder_cif(cif: Optional[str]) -> bool:
    return bool(cif) and cif.startswith("SINCIF-")


def _fold(text: Optional[str]) -> str:
    return strip_accents((text or "").strip()).casefold()


def infer_provider_type(provider_name: Optional[str], items: Iterable[ExtractedItem] = ()) -> Optional[ProviderType]:
    """MACHINERY_RENTAL when the name or most lines mention rental; None when nothing suggests it."""
    if any(keyword in _fold(provider_name) for keyword in RENTAL_KEYWORDS):
        return ProviderType.MACHINERY_RENTAL
    items = list(items)
    if items:
        rental_lines = sum(
            1 for item in items
            if any(k in _fold(f"{item.material_name or ''} {item.description or ''}") for k in RENTAL_KEYWORDS)
        )
        if rental_lines * 2 > len(items):
            return ProviderType.MACHINERY_RENTAL
    return None


class ResolutionCache:
    """Lookup cache for one session; never shared across sessions."""

    def __init__(self):
        self.providers: dict[tuple[str, str], Provider] = {}
        self.materials: dict[tuple[str, str], Material] = {}

    def remember_provider(self, account_id: str, keys: Iterable[str], provider: Provider) -> None:
        for key in keys:
            if key:
                self.providers[(account_id, key)] = provider

    def remember_material(self, account_id: str, keys: Iterable[str], material: Material) -> None:
        for key in keys:
            if key:
                self.materials[(account_id, key)] = material

    def clear(self) -> None:
        self.providers.clear()
        self.materials.clear()


class EntityResolver:
    """Match-or-create for providers and materials, plus account assignment."""

    def __init__(self, ledger, blocked_providers: Iterable[str] = ()):
        self.ledger = ledger
        self.blocked = {normalize_provider_name(name) for name in blocked_providers if name}

    # Blocked providers

    def is_blocked(self, provider_name: Optional[str]) -> bool:
        normalized = normalize_provider_name(provider_name)
        if not normalized:
            return False
        return any(
            normalized == blocked or are_provider_names_similar(normalized, blocked)
            for blocked in self.blocked
        )

    def ensure_not_blocked(self, provider_name: Optional[str]) -> None:
        if self.is_blocked(provider_name):
            logger.info(f"[RESOLVE] Provider '{provider_name}' is blocked")
            raise BlockedProviderError(provider_name or "")

    # Accounts

    async def resolve_account(
        self,
        extracted: ExtractedInvoice,
        user_id: str,
        fallback_account_id: Optional[str] = None
    ) -> Optional[Account]:
        """Client tax id, then provider tax id, then the upload-time fallback; None means unassigned."""
        if extracted.client and extracted.client.cif:
            account = await self.ledger.find_account_by_cif(user_id, extracted.client.cif)
            if account:
                return account
        if extracted.provider and extracted.provider.cif:
            account = await self.ledger.find_account_by_cif(user_id, extracted.provider.cif)
            if account:
                return account
        if fallback_account_id:
            account = await self.ledger.get_account(fallback_account_id)
            if account and account.user_id == user_id:
                return account
        return None

    # Providers

    async def _cached_provider(self, account_id: str, keys: list[str], cache: Optional[ResolutionCache]) -> Optional[Provider]:
        if cache is None:
            return None
        for key in keys:
            cached = cache.providers.get((account_id, key))
            if cached is None:
                continue
            # Entries may predate a rolled-back transaction
            current = await self.ledger.get_provider(cached.id)
            if current is not None and current.account_id == account_id:
                return current
            cache.providers.pop((account_id, key), None)
        return None

    async def _match_provider(self, extracted: ExtractedProvider, account_id: str, cif: str) -> Optional[Provider]:
        provider = await self.ledger.find_provider_by_cif(account_id, cif)
        if provider:
            return provider

        normalized_name = normalize_provider_name(extracted.name)
        for alias in (cif, normalized_name):
            if alias:
                provider = await self.ledger.find_provider_by_alias(account_id, alias)
                if provider:
                    return provider

        has_real_cif = not _is_placeholder_cif(cif)
        candidates = [
            p for p in await self.ledger.list_providers(account_id)
            # Fuzzy steps never fold two different real tax ids together
            if not (has_real_cif and not _is_placeholder_cif(p.cif) and p.cif != cif)
        ]

        folded = _fold(extracted.name)
        for candidate in candidates:
            if folded and _fold(candidate.name) == folded:
                return candidate

        phone = normalize_phone(extracted.phone)
        if phone:
            for candidate in candidates:
                if normalize_phone(candidate.phone) == phone:
                    return candidate

        for candidate in candidates:
            if are_provider_names_similar(candidate.name, extracted.name):
                return candidate
        return None

    async def _refresh_provider(
        self, provider: Provider, extracted: ExtractedProvider, provider_type: Optional[ProviderType]
    ) -> Provider:
        refreshed = provider.model_copy(update={
            "name": extracted.name or provider.name,
            "email": extracted.email or provider.email,
            "phone": extracted.phone or provider.phone,
            "address": extracted.address or provider.address,
            "type": provider_type or provider.type,
        })
        await self.ledger.update_provider_contact(
            refreshed.id, refreshed.name, refreshed.email, refreshed.phone, refreshed.address, refreshed.type
        )
        return refreshed

    async def resolve_provider(
        self,
        extracted: ExtractedProvider,
        account_id: str,
        cache: Optional[ResolutionCache] = None,
        provider_type: Optional[ProviderType] = None
    ) -> Provider:
        """
        Find or create the provider for an extraction.

        Raises:
            BlockedProviderError: If the provider is on the deny list
            LedgerError: If creation collides and the conflicting row cannot be found
        """
        self.ensure_not_blocked(extracted.name)

        cif = normalize_cif(extracted.cif) or placeholder_cif(extracted.name)
        keys = [f"cif:{cif}", f"name:{normalize_provider_name(extracted.name)}"]
        # A real tax id outranks any name match, so only its own key may answer
        lookup_keys = keys if _is_placeholder_cif(cif) else keys[:1]

        provider = await self._cached_provider(account_id, lookup_keys, cache)
        if provider is None:
            provider = await self._match_provider(extracted, account_id, cif)

        if provider is not None:
            provider = await self._refresh_provider(provider, extracted, provider_type)
            logger.debug(f"[RESOLVE] Provider '{extracted.name}' matched {provider.id}")
        else:
            provider = Provider(
                id=new_id(),
                account_id=account_id,
                cif=cif,
                name=extracted.name,
                email=extracted.email,
                phone=extracted.phone,
                address=extracted.address,
                type=provider_type or ProviderType.MATERIAL_SUPPLIER,
            )
            try:
                provider = await self.ledger.insert_provider(provider)
                logger.info(f"[RESOLVE] Created provider '{provider.name}' ({provider.cif})")
            except sqlite3.IntegrityError as e:
                # Another writer created it first
                existing = await self._match_provider(extracted, account_id, cif)
                if existing is None:
                    raise LedgerError("resolve_provider", e)
                provider = await self._refresh_provider(existing, extracted, provider_type)

        if cache is not None:
            cache.remember_provider(account_id, keys, provider)
        return provider

    # Materials

    async def _cached_material(self, account_id: str, keys: list[str], cache: Optional[ResolutionCache]) -> Optional[Material]:
        if cache is None:
            return None
        for key in keys:
            cached = cache.materials.get((account_id, key))
            if cached is None:
                continue
            current = await self.ledger.get_material(cached.id)
            if current is not None and current.account_id == account_id:
                return current
            cache.materials.pop((account_id, key), None)
        return None

    async def _match_material(self, name: str, code: Optional[str], account_id: str) -> Optional[Material]:
        if code:
            material = await self.ledger.find_material_by_code(account_id, code)
            if material:
                return material
            material = await self.ledger.find_material_by_reference(account_id, code)
            if material:
                return material

        existing = await self.ledger.list_materials(account_id)
        folded = _fold(name)
        for material in existing:
            if _fold(material.name) == folded:
                return material

        if code and len(code) >= MIN_SIMILAR_CODE_LENGTH:
            for material in existing:
                if are_material_codes_similar(material.code, code) or are_material_codes_similar(material.reference_code, code):
                    return material
        return None

    async def _maybe_upgrade_code(self, material: Material, code: Optional[str]) -> Material:
        """Replace a generated slug code by a real extracted code when one shows up."""
        if not code or material.code == code or not is_generated_code(material.code, material.name):
            return material
        if await self.ledger.find_material_by_code(material.account_id, code):
            return material
        await self.ledger.update_material_code(material.id, code, code)
        logger.info(f"[RESOLVE] Upgraded material code {material.code} -> {code}")
        return material.model_copy(update={"code": code, "reference_code": code})

    async def resolve_material(
        self,
        name: str,
        code: Optional[str],
        provider_type: ProviderType,
        account_id: str,
        cache: Optional[ResolutionCache] = None,
        description: Optional[str] = None
    ) -> Material:
        """
        Find or create the material for an invoice line.

        Raises:
            LedgerError: If every code attempt collides and no material with the name exists
        """
        name = name.strip()
        raw_code = code or extract_material_code(name, description)
        normalized = normalize_material_code(raw_code) if raw_code else None
        if normalized and not is_valid_material_code(normalized):
            normalized = None

        keys = [f"name:{_fold(name)}"]
        if normalized:
            keys = [f"code:{normalized}", *keys]
        # With a code, the code lookups run before any name match
        lookup_keys = keys[:1] if normalized else keys

        material = await self._cached_material(account_id, lookup_keys, cache)
        if material is None:
            material = await self._match_material(name, normalized, account_id)

        if material is not None:
            material = await self._maybe_upgrade_code(material, normalized)
        else:
            material = await self._create_material(name, normalized, provider_type, account_id)

        if cache is not None:
            cache.remember_material(account_id, keys, material)
        return material

    async def _create_material(
        self, name: str, code: Optional[str], provider_type: ProviderType, account_id: str
    ) -> Material:
        base_code = generate_standard_material_code(name, code) or FALLBACK_MATERIAL_CODE
        category = MATERIAL_CATEGORY_BY_PROVIDER_TYPE[provider_type]

        for attempt in range(MAX_CODE_ATTEMPTS):
            candidate = base_code if attempt == 0 else f"{base_code}-{attempt + 1}"
            material = Material(
                id=new_id(), account_id=account_id, code=candidate, reference_code=code,
                name=name, category=category,
            )
            try:
                created = await self.ledger.insert_material(material)
                logger.debug(f"[RESOLVE] Created material '{name}' ({candidate})")
                return created
            except sqlite3.IntegrityError:
                logger.debug(f"[RESOLVE] Material code {candidate} taken, retrying")

        for material in await self.ledger.list_materials(account_id):
            if _fold(material.name) == _fold(name):
                return material
        raise LedgerError(
            "resolve_material", ValueError(f"no free code for '{name}' after {MAX_CODE_ATTEMPTS} attempts")
        )
