"""Unit tests for the site processor."""

import pytest
from fakes import page

from tenant_migration_worker.processors import SitesProcessor
from tenant_migration_worker.processors.sites import writable_fields
from tenant_migration_worker.schemas.job import JobKind, JobScope, Workload
from tenant_migration_worker.utils.errors import ConflictError


def test_writable_fields_drops_service_fields():
    fields = {
        "Title": "Budget",
        "Amount": 12,
        "id": "4",
        "Created": "2024-01-01",
        "AuthorLookupId": "7",
        "@odata.etag": "\"1\"",
    }

    assert writable_fields(fields) == {"Title": "Budget", "Amount": 12}


@pytest.mark.asyncio
class TestSitesProcessor:
    """Test cases for SitesProcessor."""

    @pytest.fixture
    def site(self, source):
        source.on("GET", "sites/s1", {"id": "s1", "displayName": "HR"})

    async def test_missing_destination_site_is_workload_error(self, source, destination, make_context, site):
        """Test that destination sites are never created."""
        destination.on("GET", "sites", page({"id": "x", "displayName": "HR Archive"}))
        ctx = make_context(Workload.SITES, scope=JobScope(sites=["s1"]))

        result = await SitesProcessor().process(ctx)

        assert result.failed == 1
        assert result.errors[0].level == "workload"
        assert result.errors[0].error_type == "WorkloadError"
        assert result.error == "All 1 subjects failed"
        assert destination.calls_to("POST") == []
        assert destination.calls_to("GET", "sites")[0].kwargs["params"] == {"search": "HR"}

    async def test_libraries_and_lists_migrated(self, source, destination, make_context, site):
        """Test library traversal and list item copy into the matched site."""
        destination.on("GET", "sites", page({"id": "ds1", "displayName": "HR"}))
        destination.on("GET", "sites/ds1/drives", page({"id": "dd1", "name": "Documents"}))
        source.on(
            "GET",
            "sites/s1/drives",
            page({"id": "sd1", "name": "Documents"}, {"id": "sd2", "name": "Policies"}),
        )
        source.on("GET", "drives/sd1/items/root/children", page())
        source.on(
            "GET",
            "drives/sd2/items/root/children",
            page({"id": "p1", "name": "leave.docx", "size": 4, "file": {}}),
        )
        source.on("CONTENT", "drives/sd2/items/p1/content", b"leav")
        destination.on("POST", "sites/ds1/lists", {"id": "newlib"}, {"id": "dl1"})
        destination.on("GET", "sites/ds1/lists/newlib/drive", {"id": "dd2"})
        destination.on(
            "PUT",
            "drives/dd2/items/root:/leave.docx:/content?@microsoft.graph.conflictBehavior=rename",
            {"id": "c1"},
        )
        source.on(
            "GET",
            "sites/s1/lists",
            page(
                {"id": "l1", "displayName": "Tasks", "list": {"template": "genericList"}},
                {"id": "l2", "displayName": "Documents", "list": {"template": "documentLibrary"}},
                {"id": "l3", "displayName": "Hidden", "system": {}},
            ),
        )
        source.on(
            "GET",
            "sites/s1/lists/l1/items",
            page({"id": "1", "fields": {"Title": "A", "Created": "x", "@odata.etag": "e", "id": "1"}}),
        )
        destination.on("POST", "sites/ds1/lists/dl1/items", {"id": "9"})
        ctx = make_context(Workload.SITES, scope=JobScope(sites=["s1"]))

        result = await SitesProcessor().process(ctx)

        assert result.failed == 0
        assert result.processed == 2
        created = [c.kwargs["json_data"] for c in destination.calls_to("POST", "sites/ds1/lists")]
        assert created == [
            {"displayName": "Policies", "list": {"template": "documentLibrary"}},
            {"displayName": "Tasks", "list": {"template": "genericList"}},
        ]
        item = destination.calls_to("POST", "sites/ds1/lists/dl1/items")[0]
        assert item.kwargs["json_data"] == {"fields": {"Title": "A"}}
        assert source.calls_to("GET", "sites/s1/lists/l2/items") == []
        assert source.calls_to("GET", "sites/s1/lists/l3/items") == []

    async def test_mapped_site_and_existing_list(self, source, destination, make_context, site):
        """Test explicit site mapping and list conflict fallback."""
        destination.on("GET", "sites/target", {"id": "ds1"})
        destination.on("GET", "sites/ds1/drives", page())
        source.on("GET", "sites/s1/drives", page())
        source.on("GET", "sites/s1/lists", page({"id": "l1", "displayName": "Tasks"}))
        destination.on("POST", "sites/ds1/lists", ConflictError("exists"))
        destination.on("GET", "sites/ds1/lists/Tasks", {"id": "dl1"})
        source.on("GET", "sites/s1/lists/l1/items", page({"id": "1", "fields": {"Title": "A"}}))
        destination.on("POST", "sites/ds1/lists/dl1/items", {"id": "9"})
        ctx = make_context(Workload.SITES, scope=JobScope(sites=["s1"], mappings={"s1": "target"}))

        result = await SitesProcessor().process(ctx)

        assert result.processed == 1
        assert result.failed == 0

    async def test_backup_lists(self, source, storage, make_context, site):
        source.on("GET", "sites/s1/drives", page())
        source.on("GET", "sites/s1/lists", page({"id": "l1", "displayName": "Tasks"}))
        source.on("GET", "sites/s1/lists/l1/items", page({"id": "1", "fields": {"Title": "A"}}))
        ctx = make_context(Workload.SITES, kind=JobKind.BACKUP, scope=JobScope(sites=["s1"]))

        result = await SitesProcessor().process(ctx)

        assert result.processed == 1
        assert storage.get_json("snapshots/run-1/sites/s1/lists/l1/1.json")["fields"] == {"Title": "A"}

    async def test_enumerates_all_sites(self, source, storage, make_context):
        source.on("GET", "sites", page({"id": "s1", "displayName": "HR"}, {"id": "s2", "displayName": "IT"}))
        source.on("GET", "sites/s1", {"id": "s1"})
        source.on("GET", "sites/s2", {"id": "s2"})
        source.on("GET", "sites/s1/drives", page())
        source.on("GET", "sites/s2/drives", page())
        source.on("GET", "sites/s1/lists", page())
        source.on("GET", "sites/s2/lists", page())
        ctx = make_context(Workload.SITES, kind=JobKind.BACKUP, scope=JobScope(all_sites=True))

        result = await SitesProcessor().process(ctx)

        assert result.subjects_total == 2
        assert result.subjects_done == 2
        assert source.calls_to("GET", "sites")[0].kwargs["params"]["search"] == "*"
