from camagent import Device, device_uid, plan_cameras, slugify


def test_slugify():
    assert slugify("HD USB Camera: (usb-0000:00:14.0-1)") == "hd-usb-camera-usb-0000-00-14-0-1"
    assert slugify("--Cam__One--") == "cam-one"
    assert slugify("Camera 1") == "camera-1"
    assert slugify("") == ""


def test_device_uid_joins_raw_hostname_and_node():
    assert device_uid("Cam-1.local", "/dev/video0") == "Cam-1.local:/dev/video0"


def test_plan_sorts_by_node_before_indexing():
    cams = plan_cameras(
        "Lab Host",
        [Device("Rear", "/dev/video4"), Device("", "/dev/video0")],
        "rtsp://relay:8554",
    )
    assert [(c.name, c.stream_path) for c in cams] == [
        ("Camera 1", "lab-host-camera-1-0"),
        ("Rear", "lab-host-rear-1"),
    ]
    assert cams[1].rtsp_url == "rtsp://relay:8554/lab-host-rear-1"
    assert cams[1].device_uid == "Lab Host:/dev/video4"
    assert all(c.enabled and not c.publishing for c in cams)


def test_stream_path_is_positional_but_uid_is_stable():
    rear = Device("Rear", "/dev/video4")
    before = plan_cameras("h", [rear], "rtsp://r")
    after = plan_cameras("h", [Device("Front", "/dev/video0"), rear], "rtsp://r")

    assert before[0].device_uid == after[1].device_uid
    assert before[0].stream_path == "h-rear-0"
    assert after[1].stream_path == "h-rear-1"
