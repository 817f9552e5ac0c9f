# tests/repositories/test_sqlalchemy_vm_repository.py
from sandbox_vm.database import models


class TestSqlalchemyVMRepository:
    def test_insert_assigns_increasing_ids_and_stopped_status(self, vm_repo):
        first = vm_repo.insert(1, "box1")
        second = vm_repo.insert(1, "box2")

        assert second > first
        vm = vm_repo.get(first)
        assert vm.owner_id == 1
        assert vm.name == "box1"
        assert vm.status == models.VM_STATUS_STOPPED
        assert vm.created_at is not None

    def test_ids_are_not_reused_after_delete(self, vm_repo):
        """삭제된 VM의 id(와 그 포트)는 다른 VM에게 다시 배정되지 않아야 합니다."""
        vm_id = vm_repo.insert(1, "box1")
        vm_repo.delete(vm_id)

        assert vm_repo.insert(1, "box2") > vm_id

    def test_get_missing_returns_none(self, vm_repo):
        assert vm_repo.get(999) is None

    def test_list_and_count_are_scoped_to_owner(self, vm_repo):
        vm_repo.insert(1, "a")
        vm_repo.insert(1, "b")
        vm_repo.insert(2, "c")

        assert [vm.name for vm in vm_repo.list_by_owner(1)] == ["a", "b"]
        assert vm_repo.count_by_owner(1) == 2
        assert vm_repo.count_by_owner(2) == 1
        assert vm_repo.count_by_owner(3) == 0

    def test_update_status(self, vm_repo):
        vm_id = vm_repo.insert(1, "box1")

        vm_repo.update_status(vm_id, models.VM_STATUS_RUNNING)

        assert vm_repo.get(vm_id).status == models.VM_STATUS_RUNNING

    def test_delete_is_idempotent(self, vm_repo):
        vm_id = vm_repo.insert(1, "box1")

        vm_repo.delete(vm_id)
        vm_repo.delete(vm_id)

        assert vm_repo.get(vm_id) is None
        assert vm_repo.list_all_ids() == []

    def test_list_all_ids(self, vm_repo):
        ids = [vm_repo.insert(1, "a"), vm_repo.insert(2, "b")]
        assert sorted(vm_repo.list_all_ids()) == ids
