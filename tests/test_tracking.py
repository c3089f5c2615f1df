import pytest
from dateutil import parser

from app.errors import BadRequest, Forbidden, NotFound
from app.models import BookingStatus as S
from app.schemas import LocationReport

from .conftest import CUSTOMER, PROVIDER, STRANGER


@pytest.mark.asyncio
async def test_report_before_dispatch_stores_position_without_eta(tracker, distance, make_booking, store):
    booking = await make_booking(S.CONFIRMED)

    result = await tracker.report_location(booking.booking_id, PROVIDER, LocationReport(latitude=6.9, longitude=79.85))

    assert result["provider_location"]["latitude"] == 6.9
    assert result["provider_location"]["heading"] == 0
    assert result["provider_location"]["speed"] == 0
    assert distance.calls == []
    stored = await store.get(booking.booking_id)
    assert stored.provider_location["longitude"] == 79.85
    assert stored.tracking is None


@pytest.mark.asyncio
async def test_report_while_en_route_computes_eta(tracker, distance, fanout, make_booking, store, clock):
    booking = await make_booking(S.ON_THE_WAY)

    result = await tracker.report_location(
        booking.booking_id, PROVIDER, LocationReport(latitude=6.90, longitude=79.85, heading=90, speed=12.5)
    )

    assert distance.calls == [((6.90, 79.85), (6.9271, 79.8612))]
    assert result["tracking"]["estimated_distance"] == 1200
    assert result["tracking"]["estimated_duration"] == 300
    stored = await store.get(booking.booking_id)
    assert stored.tracking["last_calculated"] == clock.now.isoformat()
    assert stored.provider_location["heading"] == 90
    assert fanout.sent[-1][1] == "location_updated"


@pytest.mark.asyncio
async def test_distance_outage_still_persists_position(tracker, distance, make_booking, store):
    booking = await make_booking(S.ON_THE_WAY)
    distance.available = False

    result = await tracker.report_location(booking.booking_id, PROVIDER, LocationReport(latitude=1, longitude=1))

    assert result["provider_location"]["latitude"] == 1
    assert result["tracking"] is None
    stored = await store.get(booking.booking_id)
    assert stored.provider_location["latitude"] == 1
    assert stored.tracking is None


@pytest.mark.asyncio
async def test_later_report_wins_and_timestamps_advance(tracker, make_booking, store, clock):
    booking = await make_booking(S.ON_THE_WAY)

    await tracker.report_location(booking.booking_id, PROVIDER, LocationReport(latitude=1, longitude=1))
    first = parser.isoparse((await store.get(booking.booking_id)).provider_location["last_updated"])

    clock.advance(5)
    await tracker.report_location(booking.booking_id, PROVIDER, LocationReport(latitude=2, longitude=2))

    stored = await store.get(booking.booking_id)
    assert (stored.provider_location["latitude"], stored.provider_location["longitude"]) == (2, 2)
    assert parser.isoparse(stored.provider_location["last_updated"]) > first


@pytest.mark.asyncio
async def test_out_of_order_report_is_dropped(tracker, make_booking, store, clock):
    booking = await make_booking(S.ON_THE_WAY)

    clock.advance(10)
    await tracker.report_location(booking.booking_id, PROVIDER, LocationReport(latitude=2, longitude=2))
    clock.advance(-5)
    result = await tracker.report_location(booking.booking_id, PROVIDER, LocationReport(latitude=1, longitude=1))

    assert result["provider_location"]["latitude"] == 2
    assert (await store.get(booking.booking_id)).provider_location["latitude"] == 2


@pytest.mark.asyncio
async def test_zero_coordinates_are_valid(tracker, make_booking):
    booking = await make_booking(S.CONFIRMED)
    result = await tracker.report_location(booking.booking_id, PROVIDER, LocationReport(latitude=0, longitude=0))
    assert result["provider_location"]["latitude"] == 0


@pytest.mark.asyncio
async def test_only_provider_may_report(tracker, make_booking):
    booking = await make_booking(S.ON_THE_WAY)
    for actor in (CUSTOMER, STRANGER):
        with pytest.raises(Forbidden):
            await tracker.report_location(booking.booking_id, actor, LocationReport(latitude=1, longitude=1))


@pytest.mark.asyncio
async def test_missing_coordinates_are_rejected(tracker, make_booking, store):
    booking = await make_booking(S.ON_THE_WAY)
    with pytest.raises(BadRequest):
        await tracker.report_location(booking.booking_id, PROVIDER, LocationReport(latitude=1))
    assert (await store.get(booking.booking_id)).provider_location is None


@pytest.mark.asyncio
async def test_read_tracking_hides_position_outside_delivery(tracker, make_booking):
    booking = await make_booking(
        S.PENDING,
        provider_location={"latitude": 1, "longitude": 1, "last_updated": "2026-01-01T08:00:00+00:00"},
    )

    view = await tracker.read_tracking(booking.booking_id, CUSTOMER)

    assert view == {"tracking_available": False, "status": S.PENDING}


@pytest.mark.asyncio
async def test_read_tracking_during_delivery(tracker, make_booking):
    booking = await make_booking(S.ARRIVED)
    await tracker.report_location(booking.booking_id, PROVIDER, LocationReport(latitude=6.92, longitude=79.86))

    view = await tracker.read_tracking(booking.booking_id, CUSTOMER)

    assert view["tracking_available"] is True
    assert view["status"] == S.ARRIVED
    assert view["provider_location"]["latitude"] == 6.92
    assert view["service_location"]["formatted_address"] == "Colombo"
    assert view["tracking"]["estimated_distance"] == 1200
    assert view["provider_details"] == {"name": "Kamal", "phone": "0779876543", "profile_photo": "k.png"}


@pytest.mark.asyncio
async def test_read_tracking_requires_party(tracker, make_booking):
    booking = await make_booking(S.IN_PROGRESS)
    with pytest.raises(Forbidden):
        await tracker.read_tracking(booking.booking_id, STRANGER)


@pytest.mark.asyncio
async def test_authorization_is_checked_before_coordinates(tracker, make_booking):
    booking = await make_booking(S.ON_THE_WAY)

    with pytest.raises(Forbidden):
        await tracker.report_location(booking.booking_id, STRANGER, LocationReport(longitude=1))
    with pytest.raises(NotFound):
        await tracker.report_location("no-such-booking", PROVIDER, LocationReport(longitude=1))
