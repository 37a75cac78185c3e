"""Reconciliation controller for kube-pat."""

from kubepat.controller.reconciler import ControllerState, PassReport, ReconciliationController

__all__ = ["ControllerState", "PassReport", "ReconciliationController"]
