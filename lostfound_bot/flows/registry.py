"""Declares every conversation flow and its ordered steps."""

from __future__ import annotations

from functools import partial

from ..models import FlowName
from ..services.flow_engine import Flow, FlowRegistry
from ..services.listing_publisher import ListingPublisher
from ..services.owner_verification import OwnerVerification
from . import draft, listing_steps, my_listings_steps, owner_steps, volunteer_steps


def build_registry(verification: OwnerVerification, publisher: ListingPublisher) -> FlowRegistry:
    return FlowRegistry(
        [
            Flow(
                name=FlowName.LOST,
                steps=listing_steps.build_steps(FlowName.LOST),
                initial_payload=partial(draft.new_payload, FlowName.LOST),
                on_finish=listing_steps.publish_on_finish(FlowName.LOST, publisher),
            ),
            Flow(
                name=FlowName.FOUND,
                steps=listing_steps.build_steps(FlowName.FOUND),
                initial_payload=partial(draft.new_payload, FlowName.FOUND),
                on_finish=listing_steps.publish_on_finish(FlowName.FOUND, publisher),
            ),
            Flow(
                name=FlowName.OWNER,
                steps=(
                    owner_steps.OwnerIntroStep(),
                    owner_steps.OwnerQuestionStep(verification),
                    owner_steps.OwnerWaitingStep(verification),
                ),
                startable=False,
            ),
            Flow(
                name=FlowName.VOLUNTEER,
                steps=(
                    volunteer_steps.VolunteerIntroStep(),
                    volunteer_steps.VolunteerLocationStep(),
                    volunteer_steps.VolunteerListStep(),
                ),
                initial_payload=lambda: {"flow": FlowName.VOLUNTEER, "location": None},
            ),
            Flow(
                name=FlowName.MY,
                steps=my_listings_steps.build_steps(),
                back_targets=my_listings_steps.BACK_TARGETS,
                initial_payload=lambda: {"flow": FlowName.MY},
            ),
        ]
    )
