"""Tests for provider, material and account resolution."""
from unittest.mock import AsyncMock, patch

import pytest

from invoice_ledger.core.exceptions import BlockedProviderError, LedgerError
from invoice_ledger.core.models import ExtractedProvider, Material, ProviderType
from invoice_ledger.core.resolver import MAX_CODE_ATTEMPTS, ResolutionCache, infer_provider_type
from invoice_ledger.storage.ledger import new_id

from conftest import USER_ID, BLOCKED_PROVIDER, make_invoice, make_item


class TestProviders:
    """Provider match-or-create ladder."""

    @pytest.mark.asyncio
    async def test_creates_then_matches_by_cif_variant(self, ledger, resolver, account):
        created = await resolver.resolve_provider(ExtractedProvider(name="Suministros Garcia SL", cif="B-87654321"), account.id)
        assert created.cif == "B87654321"

        again = await resolver.resolve_provider(ExtractedProvider(name="Otro nombre", cif="ES B87654321"), account.id)
        assert again.id == created.id
        assert await ledger.count_rows("providers") == 1

    @pytest.mark.asyncio
    async def test_missing_cif_gets_placeholder_identity(self, resolver, account):
        provider = await resolver.resolve_provider(ExtractedProvider(name="Hormigones Perez"), account.id)
        assert provider.cif == "SINCIF-HORMIGONESPEREZ"

    @pytest.mark.asyncio
    async def test_matches_by_phone(self, resolver, account):
        first = await resolver.resolve_provider(
            ExtractedProvider(name="Hormigones Perez", phone="+34 912 345 678"), account.id
        )
        second = await resolver.resolve_provider(ExtractedProvider(name="HP Obras", phone="912345678"), account.id)
        assert second.id == first.id

    @pytest.mark.asyncio
    async def test_matches_by_similar_name(self, resolver, account):
        first = await resolver.resolve_provider(ExtractedProvider(name="Almacenes Garcia Hermanos SL"), account.id)
        second = await resolver.resolve_provider(ExtractedProvider(name="Garcia Hermanos"), account.id)
        assert second.id == first.id

    @pytest.mark.asyncio
    async def test_different_real_cifs_never_merge(self, ledger, resolver, account):
        first = await resolver.resolve_provider(ExtractedProvider(name="Garcia Hermanos SL", cif="B11112222"), account.id)
        second = await resolver.resolve_provider(ExtractedProvider(name="Garcia Hermanos SA", cif="A33334444"), account.id)
        assert first.id != second.id
        assert await ledger.count_rows("providers") == 2

    @pytest.mark.asyncio
    async def test_refreshes_contact_details(self, ledger, resolver, account):
        provider = await resolver.resolve_provider(ExtractedProvider(name="Acme SL", cif="B87654321"), account.id)
        await resolver.resolve_provider(
            ExtractedProvider(name="Acme SL", cif="B87654321", email="ventas@acme.es"), account.id
        )
        stored = await ledger.get_provider(provider.id)
        assert stored.email == "ventas@acme.es"

    @pytest.mark.asyncio
    async def test_blocked_provider_is_rejected(self, ledger, resolver, account):
        with pytest.raises(BlockedProviderError):
            await resolver.resolve_provider(ExtractedProvider(name="PROVEEDOR VETADO, S.L."), account.id)
        assert await ledger.count_rows("providers") == 0
        assert resolver.is_blocked(BLOCKED_PROVIDER)
        assert not resolver.is_blocked("Suministros Garcia SL")

    @pytest.mark.asyncio
    async def test_cache_short_circuits_lookups(self, ledger, resolver, account):
        cache = ResolutionCache()
        provider = await resolver.resolve_provider(ExtractedProvider(name="Acme SL", cif="B87654321"), account.id, cache)
        assert cache.providers[(account.id, "cif:B87654321")].id == provider.id
        again = await resolver.resolve_provider(ExtractedProvider(name="Acme SL", cif="B87654321"), account.id, cache)
        assert again.id == provider.id

    @pytest.mark.asyncio
    async def test_cache_never_crosses_real_cifs(self, ledger, resolver, account):
        cache = ResolutionCache()
        first = await resolver.resolve_provider(
            ExtractedProvider(name="Suministros Garcia SL", cif="B87654321"), account.id, cache
        )
        second = await resolver.resolve_provider(
            ExtractedProvider(name="Suministros Garcia SL", cif="B22222222"), account.id, cache
        )
        assert second.id != first.id
        assert second.cif == "B22222222"
        assert (await ledger.get_provider(first.id)).cif == "B87654321"
        assert await ledger.count_rows("providers") == 2

    @pytest.mark.asyncio
    async def test_cached_name_answers_for_missing_cif(self, ledger, resolver, account):
        cache = ResolutionCache()
        first = await resolver.resolve_provider(ExtractedProvider(name="Hormigones Perez"), account.id, cache)
        with patch.object(resolver, "_match_provider", AsyncMock(return_value=None)) as ladder:
            again = await resolver.resolve_provider(ExtractedProvider(name="HORMIGONES PEREZ"), account.id, cache)
        assert again.id == first.id
        ladder.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_insert_race_falls_back_to_existing_row(self, ledger, resolver, account):
        existing = await resolver.resolve_provider(ExtractedProvider(name="Acme SL", cif="B87654321"), account.id)
        real_match = resolver._match_provider
        calls = []

        async def match_after_race(*args):
            calls.append(args)
            # The first lookup misses, as if the row was written concurrently
            return None if len(calls) == 1 else await real_match(*args)

        with patch.object(resolver, "_match_provider", side_effect=match_after_race):
            provider = await resolver.resolve_provider(
                ExtractedProvider(name="Acme SL", cif="B87654321", email="ventas@acme.es"), account.id
            )

        assert len(calls) == 2
        assert provider.id == existing.id
        assert (await ledger.get_provider(existing.id)).email == "ventas@acme.es"
        assert await ledger.count_rows("providers") == 1

    @pytest.mark.asyncio
    async def test_insert_race_without_match_raises(self, ledger, resolver, account):
        await resolver.resolve_provider(ExtractedProvider(name="Acme SL", cif="B87654321"), account.id)
        with patch.object(resolver, "_match_provider", AsyncMock(return_value=None)):
            with pytest.raises(LedgerError):
                await resolver.resolve_provider(ExtractedProvider(name="Acme SL", cif="B87654321"), account.id)


class TestMaterials:
    """Material match-or-create."""

    @pytest.mark.asyncio
    async def test_extracted_code_becomes_ledger_code(self, resolver, account):
        material = await resolver.resolve_material("Cemento gris", "cem-25", ProviderType.MATERIAL_SUPPLIER, account.id)
        assert material.code == "CEM25"
        assert material.category == "Materiales"

    @pytest.mark.asyncio
    async def test_name_slug_when_no_code(self, resolver, account):
        material = await resolver.resolve_material("Arena Fina", None, ProviderType.MATERIAL_SUPPLIER, account.id)
        assert material.code == "arena-fina"
        again = await resolver.resolve_material("ARENA FINA", None, ProviderType.MATERIAL_SUPPLIER, account.id)
        assert again.id == material.id

    @pytest.mark.asyncio
    async def test_slug_code_upgraded_when_real_code_appears(self, ledger, resolver, account):
        material = await resolver.resolve_material("Arena Fina", None, ProviderType.MATERIAL_SUPPLIER, account.id)
        upgraded = await resolver.resolve_material("Arena Fina", "AR-100", ProviderType.MATERIAL_SUPPLIER, account.id)
        assert upgraded.id == material.id
        assert (await ledger.get_material(material.id)).code == "AR100"

    @pytest.mark.asyncio
    async def test_code_collision_gets_suffix(self, resolver, account):
        first = await resolver.resolve_material("Arena Fina", None, ProviderType.MATERIAL_SUPPLIER, account.id)
        # Different name, same slug
        second = await resolver.resolve_material("Arena  Fina.", None, ProviderType.MATERIAL_SUPPLIER, account.id)
        assert second.id != first.id
        assert second.code == "arena-fina-2"

    @pytest.mark.asyncio
    async def test_rental_category(self, resolver, account):
        material = await resolver.resolve_material("Grua torre", None, ProviderType.MACHINERY_RENTAL, account.id)
        assert material.category == "Alquiler de maquinaria"

    @pytest.mark.asyncio
    async def test_similar_long_code_matches(self, resolver, account):
        first = await resolver.resolve_material("Hormigon HA-25", "HA25B20", ProviderType.MATERIAL_SUPPLIER, account.id)
        second = await resolver.resolve_material("Hormigon armado", "HA25B20IIA", ProviderType.MATERIAL_SUPPLIER, account.id)
        assert second.id == first.id

    @pytest.mark.asyncio
    async def test_exhausted_codes_fall_back_to_same_name(self, ledger, resolver, account):
        racer = await ledger.insert_material(Material(
            id=new_id(), account_id=account.id, code="grava-fina", name="Grava fina", category="Materiales"
        ))
        for attempt in range(2, MAX_CODE_ATTEMPTS + 1):
            await ledger.insert_material(Material(
                id=new_id(), account_id=account.id, code=f"grava-fina-{attempt}",
                name=f"Arido {attempt}", category="Materiales",
            ))

        # The ladder misses, as if every row was written concurrently
        with patch.object(resolver, "_match_material", AsyncMock(return_value=None)):
            material = await resolver.resolve_material("Grava fina", None, ProviderType.MATERIAL_SUPPLIER, account.id)

        assert material.id == racer.id
        assert await ledger.count_rows("materials") == MAX_CODE_ATTEMPTS

    @pytest.mark.asyncio
    async def test_exhausted_codes_without_same_name_raise(self, ledger, resolver, account):
        for attempt in range(1, MAX_CODE_ATTEMPTS + 1):
            code = "grava-fina" if attempt == 1 else f"grava-fina-{attempt}"
            await ledger.insert_material(Material(
                id=new_id(), account_id=account.id, code=code, name=f"Arido {attempt}", category="Materiales"
            ))

        with patch.object(resolver, "_match_material", AsyncMock(return_value=None)):
            with pytest.raises(LedgerError):
                await resolver.resolve_material("Grava fina", None, ProviderType.MATERIAL_SUPPLIER, account.id)
        assert await ledger.count_rows("materials") == MAX_CODE_ATTEMPTS


class TestAccounts:
    """Account assignment."""

    @pytest.mark.asyncio
    async def test_client_cif_wins(self, resolver, account):
        resolved = await resolver.resolve_account(make_invoice(client_cif="ES-B11111111"), USER_ID)
        assert resolved.id == account.id

    @pytest.mark.asyncio
    async def test_fallback_account(self, ledger, resolver, account):
        other = await ledger.create_account(USER_ID, "Segunda", "B99999999")
        resolved = await resolver.resolve_account(make_invoice(client_cif=None), USER_ID, other.id)
        assert resolved.id == other.id

    @pytest.mark.asyncio
    async def test_fallback_of_another_user_is_ignored(self, ledger, resolver, account):
        foreign = await ledger.create_account("user-2", "Ajena", "B55555555")
        assert await resolver.resolve_account(make_invoice(client_cif=None), USER_ID, foreign.id) is None


def test_infer_provider_type():
    assert infer_provider_type("Alquileres Norte SL") == ProviderType.MACHINERY_RENTAL
    items = [make_item("Alquiler grua"), make_item("Alquiler plataforma"), make_item("Gasoil")]
    assert infer_provider_type("Norte SL", items) == ProviderType.MACHINERY_RENTAL
    assert infer_provider_type("Norte SL", [make_item("Cemento")]) is None
