"""Tests for the group HTTP endpoints."""

from wsplane.core.models import Group


class TestGroups:
    async def test_platform_admin_creates_group(self, client, cluster, admin_headers) -> None:
        response = await client.post(
            "/api/v1/groups",
            json={
                "name": "g1",
                "quota": {"cpu": "2", "memory": "4Gi", "storage": "20Gi", "pods": 10},
            },
            headers=admin_headers,
        )

        assert response.status_code == 201
        body = response.json()
        assert body["namespace"] == "group-g1"
        assert body["member_count"] == 1
        assert cluster.quotas[("group-g1", "group-g1-quota")]["limits.memory"] == "4Gi"

    async def test_plain_user_cannot_create(self, client, alice_headers) -> None:
        response = await client.post("/api/v1/groups", json={"name": "g1"}, headers=alice_headers)
        assert response.status_code == 403

    async def test_invalid_namespace_is_422(self, client, admin_headers) -> None:
        response = await client.post(
            "/api/v1/groups", json={"name": "g1", "namespace": "Not_Valid"}, headers=admin_headers
        )
        assert response.status_code == 422

    async def test_get_includes_usage(self, client, alice_headers, group: Group) -> None:
        response = await client.get(f"/api/v1/groups/{group.id}", headers=alice_headers)

        assert response.status_code == 200
        assert response.json()["usage"]["pods"]["used"] == 1

    async def test_list_only_member_groups(
        self, client, alice_headers, bob_headers, group: Group
    ) -> None:
        mine = await client.get("/api/v1/groups", headers=alice_headers)
        theirs = await client.get("/api/v1/groups", headers=bob_headers)

        assert [g["id"] for g in mine.json()["items"]] == [group.id]
        assert theirs.json()["total"] == 0

    async def test_patch_description(self, client, admin_headers, group: Group) -> None:
        response = await client.patch(
            f"/api/v1/groups/{group.id}", json={"description": "team"}, headers=admin_headers
        )
        assert response.status_code == 200
        assert response.json()["description"] == "team"

    async def test_delete_with_workspaces_is_409(
        self, client, admin_headers, alice_headers, group: Group
    ) -> None:
        created = await client.post(
            "/api/v1/workspaces", json={"group_id": group.id, "name": "ws"}, headers=alice_headers
        )
        assert created.status_code == 201

        response = await client.delete(f"/api/v1/groups/{group.id}", headers=admin_headers)

        assert response.status_code == 409
        assert (await client.get(f"/api/v1/groups/{group.id}", headers=admin_headers)).is_success

    async def test_delete_empty_group(self, client, cluster, admin_headers, group: Group) -> None:
        response = await client.delete(f"/api/v1/groups/{group.id}", headers=admin_headers)

        assert response.status_code == 204
        assert group.namespace not in cluster.namespaces


class TestMembers:
    async def test_list_members(self, client, alice_headers, group: Group) -> None:
        response = await client.get(f"/api/v1/groups/{group.id}/members", headers=alice_headers)

        roles = {m["user_id"]: m["role"] for m in response.json()}
        assert roles == {"admin-1": "admin", "alice": "member"}

    async def test_add_by_email(self, client, admin_headers, group: Group) -> None:
        response = await client.post(
            f"/api/v1/groups/{group.id}/members",
            json={"email": "bob@example.com", "role": "admin"},
            headers=admin_headers,
        )

        assert response.status_code == 201
        assert response.json()["user_id"] == "bob"
        assert response.json()["role"] == "admin"

    async def test_add_requires_exactly_one_identifier(
        self, client, admin_headers, group: Group
    ) -> None:
        response = await client.post(
            f"/api/v1/groups/{group.id}/members",
            json={"user_id": "bob", "email": "bob@example.com"},
            headers=admin_headers,
        )
        assert response.status_code == 422

    async def test_set_role(self, client, admin_headers, group: Group) -> None:
        response = await client.patch(
            f"/api/v1/groups/{group.id}/members/alice",
            json={"role": "admin"},
            headers=admin_headers,
        )
        assert response.status_code == 200
        assert response.json()["role"] == "admin"

    async def test_member_leaves(self, client, alice_headers, group: Group) -> None:
        response = await client.delete(
            f"/api/v1/groups/{group.id}/members/alice", headers=alice_headers
        )
        assert response.status_code == 204

        hidden = await client.get(f"/api/v1/groups/{group.id}", headers=alice_headers)
        assert hidden.status_code == 404
