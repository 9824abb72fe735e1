"""Features, frames, map points and the sliding-window map that holds them."""

from __future__ import annotations

import itertools
import logging
import threading
import weakref

import numpy as np

from slamkit.lie import SE3

logger = logging.getLogger(__name__)


def _weak(value):
    return None if value is None else weakref.ref(value)


def _deref(ref):
    return None if ref is None else ref()


class Feature:
    """A 2D feature in an image, linked to a map point once triangulated.

    The frame and the map point are held by weak reference: a feature keeps
    neither alive, and reads as None once they are gone.
    """

    def __init__(self, frame=None, position=(0.0, 0.0), is_on_left_image=True):
        self._frame = _weak(frame)
        self._map_point = None
        self.position = np.asarray(position, dtype=float).reshape(2)
        self.is_outlier = False
        self.is_on_left_image = is_on_left_image

    @property
    def frame(self):
        return _deref(self._frame)

    @frame.setter
    def frame(self, value):
        self._frame = _weak(value)

    @property
    def map_point(self):
        return _deref(self._map_point)

    @map_point.setter
    def map_point(self, value):
        self._map_point = _weak(value)

    def __repr__(self):
        return f"Feature(position={self.position.tolist()!r}, is_on_left_image={self.is_on_left_image})"


class Frame:
    """An image pair with its world-to-camera pose and extracted features."""

    _ids = itertools.count()
    _keyframe_ids = itertools.count()

    def __init__(self, frame_id=0, time_stamp=0.0, pose=None, left_img=None, right_img=None):
        self.id = frame_id
        self.keyframe_id = 0
        self.is_keyframe = False
        self.time_stamp = time_stamp
        self._pose = SE3() if pose is None else pose
        self._pose_lock = threading.Lock()
        self.left_img = left_img
        self.right_img = right_img
        self.features_left = []
        self.features_right = []

    @property
    def pose(self):
        """The world-to-camera transform."""
        with self._pose_lock:
            return self._pose

    @pose.setter
    def pose(self, value):
        with self._pose_lock:
            self._pose = value

    @classmethod
    def create(cls):
        """Create a frame with the next frame id."""
        return cls(frame_id=next(cls._ids))

    def set_keyframe(self):
        """Mark this frame as a keyframe and give it the next keyframe id."""
        self.is_keyframe = True
        self.keyframe_id = next(Frame._keyframe_ids)

    def __repr__(self):
        return f"Frame(id={self.id}, keyframe_id={self.keyframe_id}, is_keyframe={self.is_keyframe})"


class MapPoint:
    """A landmark in the world, observed by features."""

    _ids = itertools.count()

    def __init__(self, point_id=0, position=None):
        self.id = point_id
        self.is_outlier = False
        self._pos = np.zeros(3) if position is None else np.asarray(position, dtype=float).reshape(3)
        self._lock = threading.Lock()
        self.observed_times = 0
        self._observations = []

    @property
    def pos(self):
        """Position in the world frame."""
        with self._lock:
            return self._pos.copy()

    @pos.setter
    def pos(self, value):
        with self._lock:
            self._pos = np.asarray(value, dtype=float).reshape(3)

    @classmethod
    def create(cls):
        """Create a map point with the next map point id."""
        return cls(point_id=next(cls._ids))

    def add_observation(self, feature):
        with self._lock:
            self._observations.append(weakref.ref(feature))
            self.observed_times += 1

    def remove_observation(self, feature):
        """Drop ``feature`` from the observations and unlink it from this point."""
        with self._lock:
            for index, ref in enumerate(self._observations):
                if ref() is feature:
                    del self._observations[index]
                    feature.map_point = None
                    self.observed_times -= 1
                    break

    def observations(self):
        """The observing features that still exist, in the order they were added."""
        with self._lock:
            refs = list(self._observations)
        return [feat for ref in refs if (feat := ref()) is not None]

    def __repr__(self):
        return f"MapPoint(id={self.id}, pos={self._pos.tolist()!r}, observed_times={self.observed_times})"


class Map:
    """All keyframes and landmarks, with a window of active ones.

    When more than ``num_active_keyframes`` keyframes are active, one is
    retired: the closest to the current frame if it is nearer than 0.2,
    otherwise the farthest.
    """

    MIN_DISTANCE = 0.2

    def __init__(self, num_active_keyframes=7):
        self.num_active_keyframes = num_active_keyframes
        self._lock = threading.RLock()
        self._landmarks = {}
        self._active_landmarks = {}
        self._keyframes = {}
        self._active_keyframes = {}
        self.current_frame = None

    def insert_keyframe(self, frame):
        with self._lock:
            self.current_frame = frame
            self._keyframes[frame.keyframe_id] = frame
            self._active_keyframes[frame.keyframe_id] = frame
            if len(self._active_keyframes) > self.num_active_keyframes:
                self._remove_old_keyframe()

    def insert_map_point(self, map_point):
        with self._lock:
            self._landmarks[map_point.id] = map_point
            self._active_landmarks[map_point.id] = map_point

    def all_map_points(self):
        with self._lock:
            return dict(self._landmarks)

    def all_keyframes(self):
        with self._lock:
            return dict(self._keyframes)

    def active_map_points(self):
        with self._lock:
            return dict(self._active_landmarks)

    def active_keyframes(self):
        with self._lock:
            return dict(self._active_keyframes)

    def _remove_old_keyframe(self):
        current = self.current_frame
        if current is None:
            return
        max_dis, min_dis = 0.0, 9999.0
        max_kf_id, min_kf_id = 0, 0
        twc = current.pose.inverse()
        for kf_id, kf in self._active_keyframes.items():
            if kf is current:
                continue
            dis = float(np.linalg.norm((kf.pose @ twc).log()))
            if dis > max_dis:
                max_dis, max_kf_id = dis, kf_id
            if dis < min_dis:
                min_dis, min_kf_id = dis, kf_id

        target = min_kf_id if min_dis < self.MIN_DISTANCE else max_kf_id
        frame_to_remove = self._keyframes[target]
        logger.info("remove keyframe %s", frame_to_remove.keyframe_id)

        self._active_keyframes.pop(frame_to_remove.keyframe_id, None)
        for feat in [*frame_to_remove.features_left, *frame_to_remove.features_right]:
            if feat is None:
                continue
            mp = feat.map_point
            if mp is not None:
                mp.remove_observation(feat)
        self.clean_map()

    def clean_map(self):
        """Deactivate landmarks that no feature observes; return how many were removed."""
        with self._lock:
            unobserved = [mid for mid, mp in self._active_landmarks.items() if mp.observed_times == 0]
            for mid in unobserved:
                del self._active_landmarks[mid]
        logger.info("Removed %d active landmarks", len(unobserved))
        return len(unobserved)